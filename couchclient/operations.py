"""Operations that can be added to a `CouchDBClient`.

An operation describes one HTTP request: its method, endpoint, query string
parameters and body.  It is validated and serialised when it is added to a
client, and its completion handler is called with the decoded JSON response,
an `HTTPInfo` and an error (or `None`) once the request is over:

>>> def saved(response, http_info, error):
...     if error is None:
...         print(response['rev'])
>>> client.add(PutDocumentOperation('johndoe', {'name': 'John Doe'}, 'people',
...                                 completion_handler=saved))  #doctest: +SKIP
"""

import collections
import enum
import json

import furl

from couchclient import exceptions

__all__ = ['HTTPInfo', 'Stale', 'Operation', 'CouchDatabaseOperation',
           'CreateDatabaseOperation', 'DeleteDatabaseOperation',
           'PutDocumentOperation', 'GetDocumentOperation', 'DeleteDocumentOperation',
           'PutBulkDocsOperation', 'QueryViewOperation']

JSON_MIME = 'application/json'

HTTPInfo = collections.namedtuple('HTTPInfo', ['status_code', 'headers'])

# Default of view keys, which may themselves be JSON null.
UNSET = object()


class Stale(enum.Enum):
    """Whether a view may be served without being brought up to date first."""
    OK = 'ok'
    UPDATE_AFTER = 'update_after'


def _jsons(data, indent=None):
    """Convert data into JSON string."""
    return json.dumps(data, ensure_ascii=False, indent=indent)


def json_body(data):
    return _jsons(data).encode('utf-8')


def is_json_encodable(obj):
    try:
        json.dumps(obj)
    except (TypeError, ValueError):
        return False
    return True


def document_path(database_name, doc_id):
    """The path of a document; design document IDs keep their slash."""
    if doc_id.startswith('_design/'):
        segments = [database_name, '_design', doc_id[len('_design/'):]]
    else:
        segments = [database_name, doc_id]
    return str(furl.Path(segments))


class Operation(object):
    """Base class for operations.

    Subclasses provide `endpoint` and, as needed, override `method`,
    `params`, `validate` and `serialize`.
    """

    method = 'GET'

    def __init__(self, completion_handler=None):
        self.completion_handler = completion_handler

    def __repr__(self):
        return '<%s %s %s>' % (type(self).__name__, self.method, self.endpoint)

    @property
    def endpoint(self):
        """The path of the request, relative to the server URL."""
        raise NotImplementedError

    @property
    def params(self):
        return {}

    def validate(self):
        """Return whether the operation can be made; invalid operations are never sent."""
        return True

    def serialize(self):
        """Return the request body as bytes, or `None` if there is no body.

        :raise TypeError, ValueError: if the body cannot be encoded
        """
        return None

    def process_response(self, data, http_info, error):
        """Decode the raw response body and complete the operation."""
        response = None
        if data:
            try:
                response = json.loads(data.decode('utf-8'))
            except ValueError as exc:
                if error is None:
                    error = exceptions.CouchDBException("Could not decode response body")
                    error.__cause__ = exc
        self.complete(response, http_info, error)

    def complete(self, response, http_info, error):
        if self.completion_handler is not None:
            self.completion_handler(response, http_info, error)


class CouchDatabaseOperation(Operation):
    """An operation on a single database."""

    def __init__(self, database_name, completion_handler=None):
        super(CouchDatabaseOperation, self).__init__(completion_handler)
        self.database_name = database_name

    @property
    def endpoint(self):
        return str(furl.Path([self.database_name]))


class CreateDatabaseOperation(CouchDatabaseOperation):
    method = 'PUT'


class DeleteDatabaseOperation(CouchDatabaseOperation):
    method = 'DELETE'


class PutDocumentOperation(CouchDatabaseOperation):
    """Create or update the document `id`; `revision` is required for updates."""

    method = 'PUT'

    def __init__(self, id, body, database_name, revision=None, completion_handler=None):
        super(PutDocumentOperation, self).__init__(database_name, completion_handler)
        self.id = id
        self.body = body
        self.revision = revision

    @property
    def endpoint(self):
        return document_path(self.database_name, self.id)

    @property
    def params(self):
        return {'rev': self.revision} if self.revision else {}

    def validate(self):
        return bool(self.id) and is_json_encodable(self.body)

    def serialize(self):
        return json_body(self.body)


class GetDocumentOperation(CouchDatabaseOperation):

    def __init__(self, id, database_name, revision=None, include_revisions=None,
                 conflicts=None, completion_handler=None):
        super(GetDocumentOperation, self).__init__(database_name, completion_handler)
        self.id = id
        self.revision = revision
        self.include_revisions = include_revisions
        self.conflicts = conflicts

    @property
    def endpoint(self):
        return document_path(self.database_name, self.id)

    @property
    def params(self):
        params = {}
        if self.revision is not None:
            params['rev'] = self.revision
        if self.include_revisions is not None:
            params['revs'] = _jsons(bool(self.include_revisions))
        if self.conflicts is not None:
            params['conflicts'] = _jsons(bool(self.conflicts))
        return params

    def validate(self):
        return bool(self.id)


class DeleteDocumentOperation(CouchDatabaseOperation):

    method = 'DELETE'

    def __init__(self, id, revision, database_name, completion_handler=None):
        super(DeleteDocumentOperation, self).__init__(database_name, completion_handler)
        self.id = id
        self.revision = revision

    @property
    def endpoint(self):
        return document_path(self.database_name, self.id)

    @property
    def params(self):
        return {'rev': self.revision}

    def validate(self):
        return bool(self.id) and bool(self.revision)


class PutBulkDocsOperation(CouchDatabaseOperation):
    """Create, update or delete several documents in a single request.

    The response is a list with one ``{'id', 'rev'}`` or ``{'id', 'error',
    'reason'}`` entry per document.

    :param documents: the documents to save
    :param new_edits: if `False`, the revisions given are stored as they are
    :param all_or_nothing: if `True`, either all documents are saved or none
    """

    method = 'POST'

    def __init__(self, database_name, documents, new_edits=None, all_or_nothing=None,
                 completion_handler=None):
        super(PutBulkDocsOperation, self).__init__(database_name, completion_handler)
        self.documents = documents
        self.new_edits = new_edits
        self.all_or_nothing = all_or_nothing

    @property
    def endpoint(self):
        return str(furl.Path([self.database_name, '_bulk_docs']))

    def validate(self):
        return is_json_encodable(self.documents)

    def serialize(self):
        payload = {'docs': self.documents}
        if self.new_edits is not None:
            payload['new_edits'] = self.new_edits
        if self.all_or_nothing is not None:
            payload['all_or_nothing'] = self.all_or_nothing
        return json_body(payload)


class QueryViewOperation(CouchDatabaseOperation):
    """Query a view index to obtain data and/or documents.

    Keyword arguments:

    - `descending`: Return the rows in descending order.
    - `start_key`, `start_key_document_id`: Return rows starting with the
      specified key, and document ID among rows sharing that key.
    - `end_key`, `end_key_document_id`: Stop returning rows when the
      specified key (and document ID) is reached.
    - `inclusive_end`: Whether the row matching the end key is included.
    - `key`: Return only rows that match the specified key.
    - `keys`: Return only rows where they key matches one of those specified
      as a list.  The keys are sent in the body of a ``POST`` request.
    - `limit`: Limit the number of rows returned.
    - `skip`: Skip the number of rows before starting to return rows.
    - `include_docs`: If `True`, include the document for each row.
    - `conflicts`: Include conflict information with the documents.
    - `reduce`: If set to `False` then do not use the reduce function.
    - `group`, `group_level`: Group the results of the reduce function.
    - `stale`: A `Stale` value, allow the view to be returned as it is.
    - `include_last_update_sequence_number`: Include ``update_seq`` in the
      response.
    - `row_handler`: Called with each row of the response before the
      completion handler is called.

    A `start_key`, `end_key` or `key` of `None` is sent as JSON ``null``;
    leave them out to not send them at all.
    """

    def __init__(self, name, design_document_id, database_name,
                 descending=None,
                 start_key=UNSET,
                 start_key_document_id=None,
                 end_key=UNSET,
                 end_key_document_id=None,
                 inclusive_end=None,
                 key=UNSET,
                 keys=None,
                 limit=None,
                 skip=None,
                 include_docs=None,
                 conflicts=None,
                 reduce=None,
                 group=None,
                 group_level=None,
                 stale=None,
                 include_last_update_sequence_number=None,
                 row_handler=None,
                 completion_handler=None):
        super(QueryViewOperation, self).__init__(database_name, completion_handler)
        self.name = name
        self.design_document_id = design_document_id
        self.descending = descending
        self.start_key = start_key
        self.start_key_document_id = start_key_document_id
        self.end_key = end_key
        self.end_key_document_id = end_key_document_id
        self.inclusive_end = inclusive_end
        self.key = key
        self.keys = keys
        self.limit = limit
        self.skip = skip
        self.include_docs = include_docs
        self.conflicts = conflicts
        self.reduce = reduce
        self.group = group
        self.group_level = group_level
        self.stale = stale
        self.include_last_update_sequence_number = include_last_update_sequence_number
        self.row_handler = row_handler

    @property
    def method(self):
        return 'POST' if self.keys is not None else 'GET'

    @property
    def endpoint(self):
        return str(furl.Path([self.database_name, '_design', self.design_document_id,
                              '_view', self.name]))

    @property
    def params(self):
        params = {}
        if self.descending is not None:
            params['descending'] = _jsons(bool(self.descending))
        if self.start_key is not UNSET:
            params['startkey'] = _jsons(self.start_key)
        if self.start_key_document_id is not None:
            params['startkey_docid'] = self.start_key_document_id
        if self.end_key is not UNSET:
            params['endkey'] = _jsons(self.end_key)
        if self.end_key_document_id is not None:
            params['endkey_docid'] = self.end_key_document_id
        if self.inclusive_end is not None:
            params['inclusive_end'] = _jsons(bool(self.inclusive_end))
        if self.key is not UNSET:
            params['key'] = _jsons(self.key)
        if self.limit is not None:
            params['limit'] = _jsons(self.limit)
        if self.skip is not None:
            params['skip'] = _jsons(self.skip)
        if self.include_docs is not None:
            params['include_docs'] = _jsons(bool(self.include_docs))
        if self.conflicts is not None:
            params['conflicts'] = _jsons(bool(self.conflicts))
        if self.reduce is not None:
            params['reduce'] = _jsons(bool(self.reduce))
        if self.group is not None:
            params['group'] = _jsons(bool(self.group))
        if self.group_level is not None:
            params['group_level'] = _jsons(self.group_level)
        if self.stale is not None:
            params['stale'] = Stale(self.stale).value
        if self.include_last_update_sequence_number is not None:
            params['update_seq'] = _jsons(bool(self.include_last_update_sequence_number))
        return params

    def validate(self):
        if self.key is not UNSET and self.keys is not None:
            return False
        for count in (self.limit, self.skip):
            if count is not None and count < 0:
                return False
        if self.stale is not None and self.stale not in [s.value for s in Stale] + list(Stale):
            return False
        keys = [k for k in (self.start_key, self.end_key, self.key) if k is not UNSET]
        return is_json_encodable(keys + [self.keys])

    def serialize(self):
        if self.keys is None:
            return None
        return json_body({'keys': self.keys})

    def complete(self, response, http_info, error):
        if self.row_handler is not None and isinstance(response, dict):
            for row in response.get('rows', []):
                self.row_handler(row)
        super(QueryViewOperation, self).complete(response, http_info, error)
