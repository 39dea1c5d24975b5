"""Operations to create query (Mango) indexes.

More information here:
    http://docs.couchdb.org/en/2.0.0/api/database/find.html#db-index

>>> index = CreateJSONQueryIndexOperation('exampledb', fields=[Sort('food', SortDirection.DESC)],
...                                       name='exampleIndex', design_document_id='examples')
>>> client.add(index)  #doctest: +SKIP
"""

import collections
import enum

import furl

from couchclient.operations import CouchDatabaseOperation, json_body, is_json_encodable

__all__ = ['SortDirection', 'Sort', 'TextIndexFieldType', 'TextIndexField',
           'CreateJSONQueryIndexOperation', 'CreateTextQueryIndexOperation']


class SortDirection(enum.Enum):
    ASC = 'asc'
    DESC = 'desc'


class TextIndexFieldType(enum.Enum):
    BOOLEAN = 'boolean'
    STRING = 'string'
    NUMBER = 'number'


Sort = collections.namedtuple('Sort', ['field', 'sort'])
Sort.__new__.__defaults__ = (None,)

TextIndexField = collections.namedtuple('TextIndexField', ['name', 'type'])


def _sort_fields(fields):
    """Fields without a direction are sent as their bare name."""
    result = []
    for field in fields:
        if field.sort is None:
            result.append(field.field)
        else:
            result.append({field.field: SortDirection(field.sort).value})
    return result


def _text_fields(fields):
    return [{'name': field.name, 'type': TextIndexFieldType(field.type).value} for field in fields]


class _CreateQueryIndexOperation(CouchDatabaseOperation):

    method = 'POST'
    index_type = None

    def __init__(self, database_name, name=None, design_document_id=None,
                 completion_handler=None):
        super(_CreateQueryIndexOperation, self).__init__(database_name, completion_handler)
        self.name = name
        self.design_document_id = design_document_id

    @property
    def endpoint(self):
        return str(furl.Path([self.database_name, '_index']))

    def _index(self):
        raise NotImplementedError

    def serialize(self):
        query = {'type': self.index_type}
        index = self._index()
        if index:
            query['index'] = index
        if self.name is not None:
            query['name'] = self.name
        if self.design_document_id is not None:
            query['ddoc'] = self.design_document_id
        return json_body(query)


class CreateJSONQueryIndexOperation(_CreateQueryIndexOperation):
    """Create a JSON index over `fields`, a list of `Sort` values.

    If `design_document_id` is `None` the server saves the index in a new
    design document with a generated ID, likewise for the index `name`.
    """

    index_type = 'json'

    def __init__(self, database_name, fields, name=None, design_document_id=None,
                 completion_handler=None):
        super(CreateJSONQueryIndexOperation, self).__init__(
            database_name, name, design_document_id, completion_handler)
        self.fields = fields

    def validate(self):
        return bool(self.fields)

    def _index(self):
        return {'fields': _sort_fields(self.fields)}


class CreateTextQueryIndexOperation(_CreateQueryIndexOperation):
    """Create a text index.

    :param fields: `TextIndexField` values to index; all fields of a document
                   are indexed if `None`
    :param default_field_analyzer: the analyzer used for the default field,
                                   which the ``$text`` operator queries
    :param default_field_enabled: whether the default field is enabled; if it
                                  is not, ``$text`` queries return nothing
    :param selector: only documents matching this selector are indexed
    """

    index_type = 'text'

    def __init__(self, database_name, name=None, fields=None, default_field_analyzer=None,
                 default_field_enabled=None, selector=None, design_document_id=None,
                 completion_handler=None):
        super(CreateTextQueryIndexOperation, self).__init__(
            database_name, name, design_document_id, completion_handler)
        self.fields = fields
        self.default_field_analyzer = default_field_analyzer
        self.default_field_enabled = default_field_enabled
        self.selector = selector

    def validate(self):
        if self.selector is not None:
            return is_json_encodable(self.selector)
        return True

    def _index(self):
        index = {}
        default_field = {}
        if self.fields is not None:
            index['fields'] = _text_fields(self.fields)
        if self.default_field_enabled is not None:
            default_field['enabled'] = bool(self.default_field_enabled)
        if self.default_field_analyzer is not None:
            default_field['analyzer'] = self.default_field_analyzer
        if default_field:
            index['default_field'] = default_field
        if self.selector is not None:
            index['selector'] = self.selector
        return index
