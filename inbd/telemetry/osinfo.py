"""
<Program Name>
  osinfo.py

<Purpose>
  OS section of the telemetry: a single line describing the system, e.g.

    linux edge-01 6.8.0-45-generic x86_64 Ubuntu 24.04

  followed by ' released:YYYY-MM-DD' when os-release carries a dated
  BUILD_ID.
"""
import inbd
import inbd.common
from inbd.telemetry import read_kernel_text

import datetime
import platform
import socket

log = inbd.logging.getLogger('inbd.telemetry.osinfo')
log.setLevel(inbd.logging.DEBUG)

PROC_VERSION_PATH = '/proc/version'
LSB_RELEASE_PATH = '/etc/lsb-release'
DEBIAN_VERSION_PATH = '/etc/debian_version'

BUILD_ID_FORMATS = ['%Y-%m-%d', '%Y.%m.%d', '%Y%m%d', '%Y-%m-%dT%H:%M:%SZ']




def _os_release_fields(fileio, os_release_path):
  text = read_kernel_text(fileio, os_release_path) \
      if os_release_path == inbd.OS_RELEASE_PATH \
      else _read_optional_text(fileio, os_release_path)
  return inbd.common.parse_os_release(text)



def _read_optional_text(fileio, path):
  try:
    if not fileio.exists(path):
      return ''
    return fileio.read_text(path).strip()
  except inbd.SafeIOError as e:
    log.debug('Unable to read ' + path + ': ' + str(e))
    return ''



def get_kernel_version(fileio):
  """The third field of /proc/version ('Linux version 6.8.0 ...'), or ''."""
  fields = read_kernel_text(fileio, PROC_VERSION_PATH).split()
  if len(fields) >= 3:
    return fields[2]
  return ''



def get_os_version(fileio, os_release_path=inbd.OS_RELEASE_PATH):
  fields = _os_release_fields(fileio, os_release_path)
  for key in ['VERSION_ID', 'VERSION']:
    if fields.get(key):
      return fields[key]

  lsb = inbd.common.parse_os_release(
      _read_optional_text(fileio, LSB_RELEASE_PATH))
  if lsb.get('DISTRIB_RELEASE'):
    return lsb['DISTRIB_RELEASE']

  return _read_optional_text(fileio, DEBIAN_VERSION_PATH)



def get_os_release_date(fileio, os_release_path=inbd.OS_RELEASE_PATH):
  """The BUILD_ID of os-release as a date, or None if absent or undated."""
  build_id = _os_release_fields(fileio, os_release_path).get('BUILD_ID', '')
  for build_id_format in BUILD_ID_FORMATS:
    try:
      return datetime.datetime.strptime(build_id, build_id_format).date()
    except ValueError:
      continue
  return None



def get_os_info(fileio, os_release_path=inbd.OS_RELEASE_PATH):
  """
  <Purpose>
    Collect the OS section.

  <Returns>
    {'os_information': <line>}, where the line joins, with single spaces and
    skipping unknown values: the system name, the host name, the kernel
    version, the machine architecture, the distribution, its version, and
    'released:<date>' if known.
  """
  try:
    os_type = inbd.common.detect_os(fileio, os_release_path)
  except inbd.SafeIOError as e:
    log.debug('Unable to detect the distribution: ' + str(e))
    os_type = ''

  try:
    hostname = socket.gethostname()
  except OSError:
    hostname = 'unknown-host'

  parts = [
      platform.system().lower(),
      hostname,
      get_kernel_version(fileio),
      platform.machine(),
      os_type,
      get_os_version(fileio, os_release_path)]

  release_date = get_os_release_date(fileio, os_release_path)
  if release_date is not None:
    parts.append('released:' + release_date.isoformat())

  return {'os_information': ' '.join(
      [part for part in parts if part and part != 'Unknown'])}
