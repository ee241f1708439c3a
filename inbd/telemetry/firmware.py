"""
<Program Name>
  firmware.py

<Purpose>
  Firmware section of the telemetry: BIOS vendor, version and release date.

  On systems with a device tree (most ARM boards) these are read from
  /proc/device-tree/firmware/bios/; elsewhere from the DMI under
  /sys/class/dmi/id/.

  BIOS release dates come in many layouts. parse_bios_date() tries the
  layouts in BIOS_DATE_FORMATS in order and, failing those, accepts any
  plausible four-digit year on its own.
"""
import inbd
import inbd.safe_io
from inbd.telemetry import read_kernel_text

import re
import datetime

log = inbd.logging.getLogger('inbd.telemetry.firmware')
log.setLevel(inbd.logging.DEBUG)

DMI_BIOS_VENDOR_PATH = inbd.safe_io.DMI_DIR + '/bios_vendor'
DMI_BIOS_VERSION_PATH = inbd.safe_io.DMI_DIR + '/bios_version'
DMI_BIOS_DATE_PATH = inbd.safe_io.DMI_DIR + '/bios_date'
DEVICE_TREE_BIOS_VENDOR_PATH = inbd.safe_io.DEVICE_TREE_BIOS_DIR + '/bios-vendor'
DEVICE_TREE_BIOS_VERSION_PATH = \
    inbd.safe_io.DEVICE_TREE_BIOS_DIR + '/bios-version'
DEVICE_TREE_BIOS_DATE_PATH = \
    inbd.safe_io.DEVICE_TREE_BIOS_DIR + '/bios-release-date'

BIOS_DATE_FORMATS = [
    '%m/%d/%Y',   # 01/31/2024
    '%m/%d/%y',   # 01/31/24
    '%Y-%m-%d',   # 2024-01-31
    '%d/%m/%Y',   # 31/01/2024
    '%Y/%m/%d',   # 2024/01/31
    '%b %d, %Y',  # Jan 31, 2024
    '%B %d, %Y',  # January 31, 2024
    '%d %b %Y',   # 31 Jan 2024
    '%Y.%m.%d']   # 2024.01.31

EARLIEST_BIOS_YEAR = 1980
LATEST_BIOS_YEAR = 2050





def parse_bios_date(text):
  """
  <Purpose>
    Convert a BIOS date string to a timezone-aware (UTC) datetime at midnight.

  <Exceptions>
    ValueError if text is empty or no layout matches and it holds no year
    between EARLIEST_BIOS_YEAR and LATEST_BIOS_YEAR.

  <Returns>
    datetime.datetime
  """
  text = text.strip()
  if not text:
    raise ValueError('empty date string')

  for date_format in BIOS_DATE_FORMATS:
    try:
      parsed = datetime.datetime.strptime(text, date_format)
    except ValueError:
      continue
    return parsed.replace(tzinfo=datetime.timezone.utc)

  for part in re.split(r'[/\-. ]', text):
    if len(part) == 4 and part.isdigit() and \
        EARLIEST_BIOS_YEAR <= int(part) <= LATEST_BIOS_YEAR:
      return datetime.datetime(int(part), 1, 1, tzinfo=datetime.timezone.utc)

  raise ValueError('unable to parse date: ' + text)





def _read_bios(fileio, vendor_path, version_path, date_path):
  info = {
      'bios_vendor': read_kernel_text(fileio, vendor_path),
      'bios_version': read_kernel_text(fileio, version_path),
      'bios_release_date': ''}

  date_text = read_kernel_text(fileio, date_path)
  if date_text:
    try:
      info['bios_release_date'] = parse_bios_date(date_text).isoformat()
    except ValueError as e:
      log.warning('Ignoring BIOS release date: ' + str(e))

  return info



def get_firmware_info(fileio):
  """
  <Purpose>
    Collect the firmware section, from the device tree if it has BIOS
    information and from the DMI otherwise.

  <Returns>
    A dictionary with the keys bios_vendor, bios_version and
    bios_release_date. The date is an ISO 8601 string in UTC, or '' if it is
    unknown; the other values are '' if they cannot be read.
  """
  info = _read_bios(fileio, DEVICE_TREE_BIOS_VENDOR_PATH,
      DEVICE_TREE_BIOS_VERSION_PATH, DEVICE_TREE_BIOS_DATE_PATH)

  if any(info.values()):
    return info

  return _read_bios(fileio, DMI_BIOS_VENDOR_PATH, DMI_BIOS_VERSION_PATH,
      DMI_BIOS_DATE_PATH)
