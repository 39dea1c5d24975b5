# -*- coding: utf-8 -*-
#
# Copyright (C) 2007-2009 Christopher Lenz
# All rights reserved.
#
# This software is licensed as described in the file COPYING, which
# you should have received as part of this distribution.

"""Python client API for CouchDB.

Requests are described by operations and run asynchronously on the client's
worker threads:

>>> client = CouchDBClient('http://localhost:5984/', username='admin', password='secret')
>>> handle = client.add(CreateDatabaseOperation('python-tests'))
>>> handle.wait()
True
>>> def saved(response, http_info, error):
...     print(http_info.status_code)
>>> client.add(PutDocumentOperation('johndoe', {'name': 'John Doe'}, 'python-tests',
...                                 completion_handler=saved)).wait()
201
True
>>> client.add(DeleteDatabaseOperation('python-tests')).wait()
True
>>> client.close()
"""

import logging
import os
import threading

import requests

from couchclient import exceptions
from couchclient.operations import HTTPInfo, JSON_MIME
from couchclient.session import DEFAULT_MAX_WORKERS, InterceptableSession

__all__ = ['CouchDBClient', 'OperationHandle']
__docformat__ = 'restructuredtext en'

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = os.environ.get('COUCHDB_URL', 'http://localhost:5984/')


class OperationHandle(object):
    """Returned by `CouchDBClient.add`; tracks an operation until it completes."""

    def __init__(self, operation):
        self.operation = operation
        self._task = None
        self._finished = threading.Event()

    def __repr__(self):
        return '<%s %r finished=%r>' % (type(self).__name__, self.operation, self.finished)

    @property
    def finished(self):
        return self._finished.is_set()

    @property
    def task(self):
        """The `SessionTask` making the request, `None` if it was never sent."""
        return self._task

    def wait(self, timeout=None):
        """Block until the operation's completion handler has run.

        :return: `True` if the operation finished, `False` on timeout
        """
        return self._finished.wait(timeout)

    def cancel(self):
        if self._task is not None:
            self._task.cancel()

    def _finish(self):
        self._finished.set()


class _OperationDelegate(object):
    """Collects the response to an operation's request and completes it."""

    def __init__(self, operation, handle):
        self._operation = operation
        self._handle = handle
        self._response = None
        self._chunks = []

    def received_response(self, response):
        self._response = response

    def received_data(self, data):
        self._chunks.append(data)

    def completed(self, error):
        try:
            http_info = None
            if self._response is not None:
                http_info = HTTPInfo(self._response.status_code, self._response.headers)
                if error is None and not self._response.ok:
                    error = exceptions.http_error_lookup(self._response.status_code,
                                                         self._response.reason)
            self._operation.process_response(b''.join(self._chunks), http_info, error)
        finally:
            self._handle._finish()


class CouchDBClient(object):
    """Representation of a CouchDB server.

    >>> client = CouchDBClient() # connects to the local server
    >>> remote = CouchDBClient('http://example.com:5984/')
    >>> secure_remote = CouchDBClient('https://example.com:6984/', username='user', password='pass')

    :param url: the URI of the server (for example ``http://localhost:5984/``)
    :param username: user name for HTTP basic authentication
    :param password: password for HTTP basic authentication
    :param interceptors: `HTTPInterceptor` objects run, in order, for every
                         request and response
    :param max_workers: the number of requests that may be in flight at once
    :param timeout: timeout passed to `requests` for every request
    """

    def __init__(self, url=DEFAULT_BASE_URL, username=None, password=None, interceptors=None,
                 max_workers=DEFAULT_MAX_WORKERS, timeout=None):
        if not url.endswith('/'):
            url += '/'
        self._url = url
        self._session = InterceptableSession(base_url=url, interceptors=interceptors,
                                             max_workers=max_workers, timeout=timeout)
        if username is not None:
            self._session.base_session.auth = (username, password)

    @property
    def url(self):
        return self._url

    @property
    def session(self):
        return self._session

    def __repr__(self):
        return '<%s %r>' % (type(self).__name__, self.url)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self._session.close()

    def add(self, operation):
        """Validate and serialise `operation`, then start its request.

        Operations that fail validation or serialisation are never sent;
        their completion handler is called straight away with a
        `ValidationFailed` or `SerializationFailed` error.

        :rtype: `OperationHandle`
        """
        handle = OperationHandle(operation)

        if not operation.validate():
            log.debug("Validation failed for %r", operation)
            self._fail(operation, handle, exceptions.ValidationFailed(
                "Operation {!r} failed validation".format(operation)))
            return handle

        try:
            body = operation.serialize()
        except (TypeError, ValueError) as exc:
            error = exceptions.SerializationFailed(str(exc))
            error.__cause__ = exc
            self._fail(operation, handle, error)
            return handle

        headers = {'Accept': JSON_MIME}
        if body is not None:
            headers['Content-Type'] = JSON_MIME
        request = requests.Request(operation.method, operation.endpoint, headers=headers,
                                   params=operation.params, data=body)
        handle._task = self._session.data_task(request, _OperationDelegate(operation, handle))
        handle._task.resume()
        return handle

    def _fail(self, operation, handle, error):
        try:
            operation.complete(None, None, error)
        finally:
            handle._finish()
