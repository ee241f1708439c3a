"""
<Program Name>
  telemetry/__init__.py

<Purpose>
  Gathers the host information returned by the Query RPC method. Each module
  returns one section as a dictionary of strings (and lists of such
  dictionaries), ready to be marshalled:

    hardware.py   manufacturer, product name, CPU, memory, disks
    firmware.py   BIOS vendor, version and release date
    osinfo.py     kernel and distribution
    swbom.py      installed packages
    version.py    the daemon's own version
    power_capabilities.py   supported power actions

  query.py combines them into the snapshots answered by Query.

  Collection is stateless. Values that cannot be read are left empty rather
  than failing the query.
"""
import inbd

log = inbd.logging.getLogger('inbd.telemetry')
log.setLevel(inbd.logging.DEBUG)





def read_kernel_text(fileio, path):
  """
  Return the stripped text of an allow-listed kernel file (see
  safe_io.KERNEL_READ_ONLY_PATHS), with NUL bytes removed, or '' if it cannot
  be read.
  """
  try:
    data = fileio.read_kernel_file(path)
  except inbd.SafeIOError as e:
    log.debug('Unable to read ' + path + ': ' + str(e))
    return ''
  return data.replace(b'\x00', b'').decode('utf-8', 'replace').strip()
