# -*- coding: utf-8 -*-

"""Request and response interception for the HTTP session.

An interceptor sees every outgoing request before it is sent and the headers
of every response before its body is delivered.  Interceptors are run in the
order they were given to the session, each one receiving the context
returned by the one before it:

>>> class TracingInterceptor(HTTPInterceptor):
...     def intercept_request(self, context):
...         context.request.headers['X-Trace'] = 'abc123'
...         return context
>>> client = CouchDBClient(interceptors=[TracingInterceptor()])  #doctest: +SKIP

A response interceptor may ask for the request to be made again by setting
``should_retry`` on the context it returns.  The request phase is run again,
in full, for every retry, so interceptors must not keep per-request state of
their own; the same instances are shared by all requests of a session.
"""

import requests

__all__ = ['HTTPInterceptor', 'HTTPInterceptorContext',
           'apply_request_phase', 'apply_response_phase']


def copy_request(request):
    """Return a copy of `request` whose headers and params can be changed
    without affecting the original."""
    return requests.Request(
        method=request.method,
        url=request.url,
        headers=dict(request.headers or {}),
        params=dict(request.params or {}),
        data=request.data,
        auth=request.auth,
        cookies=request.cookies,
    )


class HTTPInterceptorContext(object):
    """The state handed from one interceptor to the next.

    :param request: the `requests.Request` that will be made; interceptors
                    may change it, e.g. to add authentication headers
    :param response: the `requests.Response` received from the server, or
                     `None` during the request phase
    :param should_retry: set by a response interceptor to ask the session to
                         make the request again
    """

    def __init__(self, request, response=None, should_retry=False):
        self.request = request
        self.response = response
        self.should_retry = should_retry

    def __repr__(self):
        return '<%s %s %s retry=%r>' % (type(self).__name__, self.request.method,
                                        self.request.url, self.should_retry)


class HTTPInterceptor(object):
    """Base class for interceptors.

    Both methods return the context unchanged, so subclasses only need to
    override the phase they are interested in.
    """

    def intercept_request(self, context):
        return context

    def intercept_response(self, context):
        return context


def apply_request_phase(interceptors, context):
    """Run `context` through the request phase of every interceptor, in order.

    Objects without an ``intercept_request`` method are passed over, so an
    interceptor need not subclass `HTTPInterceptor`.
    """
    for interceptor in interceptors:
        intercept = getattr(interceptor, 'intercept_request', None)
        if intercept is not None:
            context = intercept(context)
    return context


def apply_response_phase(interceptors, context):
    """Run `context` through the response phase of every interceptor, in order."""
    for interceptor in interceptors:
        intercept = getattr(interceptor, 'intercept_response', None)
        if intercept is not None:
            context = intercept(context)
    return context
