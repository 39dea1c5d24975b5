class CouchDBException(Exception):
    """There was an ambiguous error interacting with CouchDB."""
    pass


class ValidationFailed(CouchDBException):
    """An operation failed validation and was not sent."""
    pass


class SerializationFailed(CouchDBException):
    """An operation's request body could not be encoded."""
    pass


class UnsupportedPagingOption(CouchDBException):
    """A page handler returned a directive that makes no sense in the current state."""
    pass


class RequestsException(CouchDBException):
    """There was an ambiguous exception that occurred while handling your request."""
    pass


class Timeout(RequestsException):
    """The request timed out."""
    pass


class TaskCancelled(RequestsException):
    """The request was cancelled before it completed."""
    pass


class HTTPError(RequestsException):
    """An HTTP error occurred."""
    def __init__(self, status_code, message=None):
        self.status_code = status_code
        self.message = message or "HTTP error {status_code}".format(status_code=status_code)
        super(HTTPError, self).__init__(self.message)


class HTTPBadRequest(HTTPError):
    """400 Bad Request"""
    status_code = 400

    def __init__(self, message="Bad Request"):
        super(HTTPBadRequest, self).__init__(self.__class__.status_code, message)


class HTTPUnauthorized(HTTPError):
    """401 Unauthorized"""
    status_code = 401

    def __init__(self, message="Unauthorized"):
        super(HTTPUnauthorized, self).__init__(self.__class__.status_code, message)


class HTTPForbidden(HTTPError):
    """403 Forbidden"""
    status_code = 403

    def __init__(self, message="Forbidden"):
        super(HTTPForbidden, self).__init__(self.__class__.status_code, message)


class HTTPNotFound(HTTPError):
    """404 Not Found"""
    status_code = 404

    def __init__(self, message="Not Found"):
        super(HTTPNotFound, self).__init__(self.__class__.status_code, message)


class HTTPConflict(HTTPError):
    """409 Conflict"""
    status_code = 409

    def __init__(self, message="Conflict"):
        super(HTTPConflict, self).__init__(self.__class__.status_code, message)


class HTTPPreconditionFailed(HTTPError):
    """412 Precondition Failed"""
    status_code = 412

    def __init__(self, message="Precondition failed"):
        super(HTTPPreconditionFailed, self).__init__(self.__class__.status_code, message)


_http_error_lookup = {
    exc.status_code: exc for exc in [HTTPBadRequest, HTTPUnauthorized, HTTPForbidden, HTTPNotFound, HTTPConflict, HTTPPreconditionFailed]
}


def http_error_lookup(status_code, message=None):
    if status_code in _http_error_lookup:
        return _http_error_lookup[status_code]()
    else:
        return HTTPError(status_code=status_code, message=message)
