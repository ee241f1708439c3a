"""
<Program Name>
  swbom.py

<Purpose>
  Software bill of materials: the packages installed on the host, listed
  with dpkg-query on Debian-based systems and with rpm on RPM-based ones.
"""
import inbd
import inbd.common
import inbd.executor

import datetime

log = inbd.logging.getLogger('inbd.telemetry.swbom')
log.setLevel(inbd.logging.DEBUG)

DPKG_QUERY_COMMAND = ['dpkg-query', '-f', '${Package} ${Version}\n', '-W']
RPM_QUERY_COMMAND = ['rpm', '-qa']

# Distribution (as detected by common.detect_os) -> collection method
COLLECTION_METHODS = {
    'Ubuntu': 'dpkg-query',
    'Debian GNU/Linux': 'dpkg-query',
    'EMT': 'rpm'}





def parse_dpkg_output(output):
  """Parse 'name version' lines from dpkg-query into package records."""
  packages = []
  for line in output.splitlines():
    fields = line.split()
    if len(fields) >= 2:
      packages.append({
          'name': fields[0], 'version': fields[1], 'architecture': '',
          'type': 'deb'})
  return packages



def parse_rpm_package(text):
  """
  Split an 'rpm -qa' entry, name-version-release.arch, into a package
  record. Entries that do not have that shape are kept with what can be
  recovered from them.
  """
  if '.' not in text:
    return {'name': text, 'version': '', 'architecture': '', 'type': 'rpm'}

  name_version_release, architecture = text.rsplit('.', 1)
  parts = name_version_release.split('-')
  if len(parts) >= 3:
    return {
        'name': '-'.join(parts[:-2]),
        'version': parts[-2] + '-' + parts[-1],
        'architecture': architecture,
        'type': 'rpm'}

  return {'name': name_version_release, 'version': '',
      'architecture': architecture, 'type': 'rpm'}



def parse_rpm_output(output):
  return [parse_rpm_package(line.strip())
      for line in output.splitlines() if line.strip()]





def get_swbom(fileio, run=inbd.executor.run_command,
    os_release_path=inbd.OS_RELEASE_PATH):
  """
  <Purpose>
    Collect the software bill of materials.

  <Arguments>
    fileio
      safe_io.SafeIO, used to detect the distribution.

    run
      Callable with the signature of executor.run_command.

  <Returns>
    A dictionary:
      collection_timestamp   ISO 8601 time at which collection started
      collection_method      'dpkg-query', 'rpm' or 'unknown'
      packages               list of {name, version, architecture, type}

    On an unrecognised distribution, or if the package manager fails, the
    method is still reported and the package list is empty.
  """
  timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()

  try:
    os_type = inbd.common.detect_os(fileio, os_release_path)
  except inbd.SafeIOError as e:
    log.debug('Unable to detect the distribution: ' + str(e))
    os_type = ''

  method = COLLECTION_METHODS.get(os_type, 'unknown')
  packages = []

  try:
    if method == 'dpkg-query':
      stdout, _ = run(DPKG_QUERY_COMMAND)
      packages = parse_dpkg_output(stdout.decode('utf-8', 'replace'))
    elif method == 'rpm':
      stdout, _ = run(RPM_QUERY_COMMAND)
      packages = parse_rpm_output(stdout.decode('utf-8', 'replace'))
    else:
      log.info('No software inventory method for distribution ' +
          repr(os_type))

  except inbd.CommandError as e:
    log.warning('Unable to list installed packages: ' + str(e))

  return {
      'collection_timestamp': timestamp,
      'collection_method': method,
      'packages': packages}
