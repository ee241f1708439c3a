"""
<Program Name>
  fw_registry.py

<Purpose>
  The firmware platform registry: the JSON document (by default
  /etc/firmware_tool_info.conf) that maps a system's product name, as the
  DMI reports it, to the vendor tool and arguments used to flash its
  firmware.

  The registry looks like this:

    {"firmware_component": {"firmware_products": [
      {"name": "Alder Lake Client Platform",
       "bios_vendor": "Intel Corporation",
       "guid": true,
       "firmware_tool": "fwupdate",
       "firmware_tool_args": "--apply",
       "firmware_file_type": "xx"},
      ...]}}

  It is read through the safe I/O layer and validated against a schema,
  either the schema file on disk or, if that is absent, the one bundled in
  inbd.formats.
"""
import inbd
import inbd.formats

import copy

log = inbd.logging.getLogger('inbd.fw_registry')
log.setLevel(inbd.logging.DEBUG)





class FirmwareRegistry(object):
  """
  <Purpose>
    Looks up firmware tool descriptors. The registry file is re-read on every
    lookup, so edits take effect without restarting the daemon.

  <Fields>

    self.fileio
      safe_io.SafeIO used to read the registry and its schema.

    self.registry_path
      Path of the registry document.

    self.schema_path
      Path of the registry schema; if it does not exist,
      inbd.formats.FIRMWARE_TOOL_INFO_SCHEMA is used.
  """

  def __init__(self, fileio, registry_path=inbd.FIRMWARE_TOOL_INFO_PATH,
      schema_path=inbd.FIRMWARE_TOOL_INFO_SCHEMA_PATH):
    self.fileio = fileio
    self.registry_path = registry_path
    self.schema_path = schema_path


  def schema(self):
    if self.schema_path and self.fileio.exists(self.schema_path):
      return inbd.formats.Schema(
          self.fileio.read_json(self.schema_path), self.schema_path)
    return inbd.formats.FIRMWARE_TOOL_INFO_SCHEMA


  def products(self):
    """
    <Purpose>
      Read and validate the registry and return its list of product records.

    <Exceptions>
      inbd.FormatError
        if the registry does not match the schema or has two records for the
        same platform.

      inbd.UnmarshalFailed, and the safe I/O errors of reading (size, binary
      content, nesting and property limits).
    """
    registry = self.fileio.read_json(self.registry_path)
    self.schema().check_match(registry)
    # The schema on disk may be laxer than the bundled one.
    try:
      products = registry['firmware_component']['firmware_products']
      product_names = [product['name'] for product in products]
    except (KeyError, TypeError) as e:
      raise inbd.FormatError(self.registry_path + ' has no firmware_products '
          'list of named records: ' + repr(e)) from e

    names = set()
    for name in product_names:
      if name in names:
        raise inbd.FormatError('platform ' + repr(name) +
            ' appears more than once in ' + self.registry_path)
      names.add(name)

    return products


  def get_firmware_update_tool_info(self, platform_name):
    """
    <Purpose>
      Return the descriptor of platform_name, matched exactly (case and
      whitespace included) against the records' 'name' fields.

    <Exceptions>
      inbd.PlatformNotFound
        if no record has that name. The message names the platform.

      The exceptions of products().

    <Returns>
      A copy of the record, a dictionary matching
      inbd.formats.FIRMWARE_TOOL_DESCRIPTOR_SCHEMA.
    """
    for product in self.products():
      if product['name'] == platform_name:
        log.debug('Found firmware tool info for platform ' +
            repr(platform_name))
        return copy.deepcopy(product)

    raise inbd.PlatformNotFound('platform ' + platform_name + ' not found '
        'in config. Please add firmware update configuration information '
        'and try again')
