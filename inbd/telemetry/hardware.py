"""
<Program Name>
  hardware.py

<Purpose>
  Hardware section of the telemetry: system manufacturer and product name
  from the DMI, the CPU model from /proc/cpuinfo, total memory from
  /proc/meminfo, and the block devices as reported by lsblk.

  The product name is also what the firmware updater uses to find the
  platform in the firmware registry.
"""
import inbd
import inbd.executor
import inbd.safe_io
from inbd.telemetry import read_kernel_text

import platform

log = inbd.logging.getLogger('inbd.telemetry.hardware')
log.setLevel(inbd.logging.DEBUG)

SYS_VENDOR_PATH = inbd.safe_io.DMI_DIR + '/sys_vendor'
PRODUCT_NAME_PATH = inbd.safe_io.DMI_DIR + '/product_name'
CPUINFO_PATH = '/proc/cpuinfo'
MEMINFO_PATH = '/proc/meminfo'
LSBLK_COMMAND = ['lsblk', '-b', '-d', '-o', 'name,size,rota', '--json']




def parse_cpu_model(cpuinfo):
  """
  Return the first 'model name' in /proc/cpuinfo text, or the machine
  architecture if there is none (as on most ARM systems).
  """
  for line in cpuinfo.splitlines():
    if line.startswith('model name'):
      parts = line.split(':', 1)
      if len(parts) == 2:
        return parts[1].strip()
  return platform.machine()



def parse_total_memory(meminfo):
  """Return MemTotal from /proc/meminfo text as 'N kB', or ''."""
  for line in meminfo.splitlines():
    if line.startswith('MemTotal:'):
      fields = line.split()
      if len(fields) >= 2:
        return fields[1] + ' kB'
  return ''



def get_disk_information(run=inbd.executor.run_command):
  """Return lsblk's JSON description of the block devices, or ''."""
  try:
    stdout, _ = run(LSBLK_COMMAND)
  except inbd.CommandError as e:
    log.debug('lsblk failed: ' + str(e))
    return ''
  return stdout.decode('utf-8', 'replace').strip()



def get_hardware_info(fileio, run=inbd.executor.run_command):
  """
  <Purpose>
    Collect the hardware section.

  <Arguments>
    fileio
      safe_io.SafeIO (or anything with read_kernel_file()).

    run
      Callable with the signature of executor.run_command, used for lsblk.

  <Returns>
    A dictionary with the keys system_manufacturer, system_product_name,
    cpu_id, total_physical_memory and disk_information, all strings. Any
    value that cannot be determined is ''.
  """
  cpuinfo = read_kernel_text(fileio, CPUINFO_PATH)
  meminfo = read_kernel_text(fileio, MEMINFO_PATH)

  return {
      'system_manufacturer': read_kernel_text(fileio, SYS_VENDOR_PATH),
      'system_product_name': read_kernel_text(fileio, PRODUCT_NAME_PATH),
      'cpu_id': parse_cpu_model(cpuinfo),
      'total_physical_memory': parse_total_memory(meminfo),
      'disk_information': get_disk_information(run)}
