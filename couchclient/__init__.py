# -*- coding: utf-8 -*-
#
# This software is licensed as described in the file COPYING, which
# you should have received as part of this distribution.

__version__ = '0.1.0'

from couchclient import exceptions
from couchclient.client import CouchDBClient, OperationHandle
from couchclient.interceptors import HTTPInterceptor, HTTPInterceptorContext
from couchclient.paging import PageToken, Paging, ViewPage
