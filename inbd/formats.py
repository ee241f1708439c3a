"""
<Program Name>
  formats.py

<Purpose>
  Define (and allow validation of) the data formats used by inbd: the
  configuration document, the firmware tool registry, and the argument
  structures of every RPC method.

  Each format is a Schema object. Like the schema objects this module was
  modeled on, a Schema can be asked whether an object matches it
  (matches()) or told to raise inbd.FormatError if it does not
  (check_match()). Validation itself is done by jsonschema (Draft 7).
"""
import inbd

import jsonschema



class Schema(object):
  """
  <Purpose>
    Wraps a JSON Schema document so that it can be used the same way
    throughout inbd: SOME_SCHEMA.check_match(obj).

  <Fields>

    self.schema
      The JSON Schema document itself, a dictionary.

    self.name
      A short name used in error messages, e.g. 'CONFIG_SCHEMA'.

    self.validator
      A jsonschema.Draft7Validator for self.schema.
  """

  def __init__(self, schema, name='schema'):
    # Raises jsonschema.SchemaError if the schema itself is malformed.
    try:
      jsonschema.Draft7Validator.check_schema(schema)
    except jsonschema.SchemaError as e:
      raise inbd.FormatError(
          'Invalid JSON schema ' + repr(name) + ': ' + e.message) from e

    self.schema = schema
    self.name = name
    self.validator = jsonschema.Draft7Validator(schema)


  def matches(self, obj):
    return self.validator.is_valid(obj)


  def errors(self, obj):
    """Return one human-readable line per validation error, in a stable order."""
    messages = []
    found = sorted(
        self.validator.iter_errors(obj), key=lambda e: [str(p) for p in e.path])
    for error in found:
      location = '.'.join(str(part) for part in error.path)
      if location:
        messages.append(location + ': ' + error.message)
      else:
        messages.append(error.message)
    return messages


  def check_match(self, obj):
    """
    <Purpose>
      Raise inbd.FormatError if obj does not conform to this schema.

    <Exceptions>
      inbd.FormatError, with a message naming the schema and each failure.
    """
    messages = self.errors(obj)
    if messages:
      raise inbd.FormatError(
          'Object does not match ' + self.name + ': ' + '; '.join(messages))


  def __repr__(self):
    return 'Schema(' + repr(self.name) + ')'





# Canonical GUID: 8-4-4-4-12 hexadecimal digits.
GUID_PATTERN = '^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$'

GUID_SCHEMA = Schema({'type': 'string', 'pattern': GUID_PATTERN}, 'GUID_SCHEMA')

HASH_ALGORITHM_NAMES = ['sha256', 'sha384', 'sha512']


# The configuration document, /etc/intel_manageability.conf. Used when no
# schema file is installed on the host.
CONFIG_DOCUMENT = {
  '$schema': 'http://json-schema.org/draft-07/schema#',
  'title': 'Intel Manageability configuration',
  'type': 'object',
  'properties': {
    'os_updater': {
      'type': 'object',
      'properties': {
        'trustedRepositories': {
          'type': 'array',
          'items': {'type': 'string'}
        },
        'proceedWithoutRollback': {'type': 'boolean'},
        'maxCacheSize': {'type': 'integer', 'minimum': 0}
      },
      'additionalProperties': False
    },
    'luks': {
      'type': 'object',
      'properties': {
        'volumePath': {'type': 'string'},
        'mapperName': {'type': 'string'},
        'mountPoint': {'type': 'string'},
        'passwordLength': {'type': 'integer', 'minimum': 1},
        'size': {'type': 'integer', 'minimum': 1},
        'useTPM': {'type': 'boolean'},
        'user': {'type': 'string'},
        'group': {'type': 'string'}
      },
      'additionalProperties': False
    }
  },
  'additionalProperties': False
}

CONFIG_SCHEMA = Schema(CONFIG_DOCUMENT, 'CONFIG_SCHEMA')

# Paths in the configuration document whose array values may be appended to
# or removed from. Comparison is case-sensitive.
APPENDABLE_CONFIG_PATHS = ['os_updater.trustedRepositories']


# The firmware tool registry, /etc/firmware_tool_info.conf. Used when no
# schema file is installed on the host.
FIRMWARE_TOOL_INFO_DOCUMENT = {
  '$schema': 'http://json-schema.org/draft-07/schema#',
  'title': 'Firmware update tool information',
  'type': 'object',
  'required': ['firmware_component'],
  'properties': {
    'firmware_component': {
      'type': 'object',
      'required': ['firmware_products'],
      'properties': {
        'firmware_products': {
          'type': 'array',
          'items': {
            'type': 'object',
            'required': ['name', 'bios_vendor', 'firmware_file_type'],
            'properties': {
              'name': {'type': 'string', 'minLength': 1},
              'guid': {'type': 'boolean'},
              'bios_vendor': {'type': 'string'},
              'operating_system': {'type': 'string'},
              'firmware_tool': {'type': 'string'},
              'firmware_tool_args': {'type': 'string'},
              'firmware_tool_check_args': {'type': 'string'},
              'firmware_file_type': {'type': 'string'},
              'firmware_dest_path': {'type': 'string'},
              'tool_options': {'type': 'boolean'}
            }
          }
        }
      }
    }
  }
}

FIRMWARE_TOOL_INFO_SCHEMA = Schema(
    FIRMWARE_TOOL_INFO_DOCUMENT, 'FIRMWARE_TOOL_INFO_SCHEMA')


# One record of the registry, as returned by a lookup.
FIRMWARE_TOOL_DESCRIPTOR_SCHEMA = Schema(
    FIRMWARE_TOOL_INFO_DOCUMENT['properties']['firmware_component'][
    'properties']['firmware_products']['items'],
    'FIRMWARE_TOOL_DESCRIPTOR_SCHEMA')





# RPC request structures. Only the types of known fields are checked; absent
# fields take their defaults and unknown fields are ignored. Checks that need
# more than a type (https-only URLs, non-empty paths) are made by the
# dispatcher so that they can report the specific error kind.

def _request(name, **properties):
  return Schema({'type': 'object', 'properties': properties}, name)

_STRING = {'type': 'string'}
_BOOLEAN = {'type': 'boolean'}
_STRING_LIST = {'type': 'array', 'items': {'type': 'string'}}

POWER_ACTIONS = [
    'POWER_ACTION_UNSPECIFIED', 'POWER_ACTION_CYCLE', 'POWER_ACTION_OFF']

QUERY_OPTIONS = {
    'QUERY_OPTION_UNSPECIFIED': '',
    'QUERY_OPTION_HARDWARE': 'hw',
    'QUERY_OPTION_FIRMWARE': 'fw',
    'QUERY_OPTION_OS': 'os',
    'QUERY_OPTION_SWBOM': 'swbom',
    'QUERY_OPTION_VERSION': 'version',
    'QUERY_OPTION_ALL': 'all'}

DOWNLOAD_MODES = {
    'DOWNLOAD_MODE_FULL': 'full',
    'DOWNLOAD_MODE_NO_DOWNLOAD': 'no-download',
    'DOWNLOAD_MODE_DOWNLOAD_ONLY': 'download-only'}

SET_POWER_STATE_REQUEST_SCHEMA = _request(
    'SET_POWER_STATE_REQUEST_SCHEMA',
    action={'type': 'string', 'enum': POWER_ACTIONS})

UPDATE_FIRMWARE_REQUEST_SCHEMA = _request(
    'UPDATE_FIRMWARE_REQUEST_SCHEMA',
    url=_STRING,
    signature=_STRING,
    hash_algorithm=_STRING,
    release_date=_STRING,
    do_not_reboot=_BOOLEAN,
    guid=_STRING)

UPDATE_SYSTEM_SOFTWARE_REQUEST_SCHEMA = _request(
    'UPDATE_SYSTEM_SOFTWARE_REQUEST_SCHEMA',
    url=_STRING,
    release_date=_STRING,
    mode={'type': 'string', 'enum': sorted(DOWNLOAD_MODES)},
    do_not_reboot=_BOOLEAN,
    package_list=_STRING_LIST)

UPDATE_OS_SOURCE_REQUEST_SCHEMA = _request(
    'UPDATE_OS_SOURCE_REQUEST_SCHEMA',
    source_list=_STRING_LIST)

ADD_APPLICATION_SOURCE_REQUEST_SCHEMA = _request(
    'ADD_APPLICATION_SOURCE_REQUEST_SCHEMA',
    filename=_STRING,
    source=_STRING_LIST,
    gpg_key_uri=_STRING,
    gpg_key_name=_STRING)

REMOVE_APPLICATION_SOURCE_REQUEST_SCHEMA = _request(
    'REMOVE_APPLICATION_SOURCE_REQUEST_SCHEMA',
    filename=_STRING,
    gpg_key_name=_STRING)

LOAD_CONFIG_REQUEST_SCHEMA = _request(
    'LOAD_CONFIG_REQUEST_SCHEMA',
    uri=_STRING,
    signature=_STRING,
    hash_algorithm=_STRING)

CONFIG_PATH_REQUEST_SCHEMA = _request(
    'CONFIG_PATH_REQUEST_SCHEMA',
    path=_STRING)

QUERY_REQUEST_SCHEMA = _request(
    'QUERY_REQUEST_SCHEMA',
    option={'type': 'string', 'enum': sorted(QUERY_OPTIONS)})

# Every response carries at least these two fields.
RESPONSE_SCHEMA = Schema({
  'type': 'object',
  'required': ['status_code', 'error'],
  'properties': {
    'status_code': {'type': 'integer', 'enum': [200, 400, 415, 500, 501]},
    'error': _STRING
  }
}, 'RESPONSE_SCHEMA')
