"""
<Program Name>
  query.py

<Purpose>
  Answers the Query RPC method with a snapshot of one telemetry section, or
  of all of them.
"""
import inbd
import inbd.executor
import inbd.telemetry.hardware
import inbd.telemetry.firmware
import inbd.telemetry.osinfo
import inbd.telemetry.swbom
import inbd.telemetry.version
import inbd.telemetry.power_capabilities

import datetime

log = inbd.logging.getLogger('inbd.telemetry.query')
log.setLevel(inbd.logging.DEBUG)

# Accepted options (case-sensitive) -> snapshot type
QUERY_TYPES = {
    'hw': 'hardware',
    'hardware': 'hardware',
    'fw': 'firmware',
    'firmware': 'firmware',
    'os': 'os',
    'swbom': 'swbom',
    'version': 'version',
    'all': 'all'}

# Snapshot type -> key under which its data is placed
DATA_KEYS = {
    'hardware': 'hardware',
    'firmware': 'firmware',
    'os': 'os_info',
    'swbom': 'swbom',
    'version': 'version',
    'all': 'all_info'}





class QueryHandler(object):
  """
  <Purpose>
    Collects telemetry snapshots. Nothing is cached between calls.

    Also serves as the hardware information provider of the firmware
    updater, through get_hardware_info() and get_firmware_info().

  <Fields>

    self.fileio
      safe_io.SafeIO used for every file read.

    self.run
      Callable with the signature of executor.run_command, used for lsblk,
      dpkg-query and rpm.

    self.os_release_path
      Path of the os-release file.
  """

  def __init__(self, fileio, run=inbd.executor.run_command,
      os_release_path=inbd.OS_RELEASE_PATH):
    self.fileio = fileio
    self.run = run
    self.os_release_path = os_release_path


  def get_hardware_info(self):
    return inbd.telemetry.hardware.get_hardware_info(self.fileio, self.run)


  def get_firmware_info(self):
    return inbd.telemetry.firmware.get_firmware_info(self.fileio)


  def get_os_info(self):
    return inbd.telemetry.osinfo.get_os_info(self.fileio, self.os_release_path)


  def get_swbom(self):
    return inbd.telemetry.swbom.get_swbom(
        self.fileio, self.run, self.os_release_path)


  def get_version_info(self):
    return inbd.telemetry.version.get_version_info()


  def get_all_info(self):
    return {
        'hardware': self.get_hardware_info(),
        'firmware': self.get_firmware_info(),
        'os_info': self.get_os_info(),
        'version': self.get_version_info(),
        'power_capabilities':
            inbd.telemetry.power_capabilities.get_power_capabilities(
            self.fileio),
        'swbom': self.get_swbom()}


  def handle_query(self, option):
    """
    <Purpose>
      Collect the snapshot named by option.

    <Arguments>
      option
        One of 'hw', 'hardware', 'fw', 'firmware', 'os', 'swbom', 'version'
        or 'all'. Matching is case-sensitive.

    <Exceptions>
      inbd.UnsupportedQueryOption for any other option.

    <Returns>
      {'type': <snapshot type>, 'timestamp': <ISO 8601 time at which the
      call started>, <data key>: <section>}, where the data key is that of
      DATA_KEYS.
    """
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()

    if option not in QUERY_TYPES:
      raise inbd.UnsupportedQueryOption(
          'unsupported query option: ' + str(option))

    snapshot_type = QUERY_TYPES[option]
    collectors = {
        'hardware': self.get_hardware_info,
        'firmware': self.get_firmware_info,
        'os': self.get_os_info,
        'swbom': self.get_swbom,
        'version': self.get_version_info,
        'all': self.get_all_info}

    log.debug('Collecting ' + snapshot_type + ' telemetry')
    data = collectors[snapshot_type]()

    return {
        'type': snapshot_type,
        'timestamp': timestamp,
        DATA_KEYS[snapshot_type]: data}
