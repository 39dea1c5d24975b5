#!/usr/bin/env python
# -*- coding: utf-8 -*-
#
# Copyright (C) 2007-2009 Christopher Lenz
# All rights reserved.
#
# This software is licensed as described in the file COPYING, which
# you should have received as part of this distribution.

from setuptools import setup

setup(
    name='CouchClient',
    version='0.1.0',
    description='Asynchronous operation-based client for CouchDB and Cloudant',
    long_description="""
    A Python client for CouchDB-compatible servers. Requests are described as
    operations, sent on a pool of worker threads through an interceptable,
    retrying HTTP session, and views can be paged through forwards and
    backwards.""",
    license = 'BSD',
    classifiers = [
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Topic :: Database :: Front-Ends',
        'Topic :: Software Development :: Libraries :: Python Modules',
    ],
    packages = ['couchclient', 'couchclient.tests'],
    python_requires='>=3.6',
    install_requires=[
        "furl",
        "requests",
        "requests_toolbelt",
    ],
    test_suite='couchclient.tests.__main__.suite',
    zip_safe=True,
)
