"""
<Program Name>
  ubuntu.py

<Purpose>
  System software updates on Ubuntu, with apt.

  Before anything is installed, a btrfs snapshot of the root filesystem is
  taken with snapper so that the update can be rolled back. The snapshot's
  number is recorded in the dispatcher state file
  (/var/intel-manageability/dispatcher_state), which is read after the
  following reboot:

    {"restart_reason": "sota", "snapshot_number": 12}

  The update then runs apt-get in one of three modes:

    full            update the package lists, then upgrade (or install the
                    given packages)
    no-download     install from what is already in the apt cache
    download-only   only fill the apt cache
"""
import inbd
import inbd.executor
import inbd.downloader

import os
import re
import json

log = inbd.logging.getLogger('inbd.ubuntu')
log.setLevel(inbd.logging.DEBUG)

SNAPPER_CONFIG = 'rootConfig'
SNAPSHOT_DESCRIPTION = 'sota_update'
RESTART_REASON = 'sota'
MOUNTS_PATH = '/proc/mounts'

MODE_FULL = 'full'
MODE_NO_DOWNLOAD = 'no-download'
MODE_DOWNLOAD_ONLY = 'download-only'
MODES = [MODE_FULL, MODE_NO_DOWNLOAD, MODE_DOWNLOAD_ONLY]

NO_UPDATE_AVAILABLE = '0 upgraded, 0 newly installed, 0 to remove'

_UPDATE_SIZE_PATTERN = re.compile(
    r'(\d+(?:,\d+)*(\.\d+)?)(\s*(kB|B|MB|GB)).*(freed|used)')

_UNIT_FACTORS = {
    'B': 1,
    'kB': 1024,
    'MB': 1024 * 1024,
    'GB': 1024 * 1024 * 1024}

# Debian package names, optionally with =version, :arch or /release.
_PACKAGE_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9.+\-:~=/]*$')

_CONFFILE_OPTIONS = [
    '-o', 'Dpkg::Options::=--force-confdef',
    '-o', 'Dpkg::Options::=--force-confold']

_DPKG_CONFIGURE = [inbd.executor.DPKG_COMMAND, '--configure', '-a',
    '--force-confdef', '--force-confold']

_APT_GET = inbd.executor.APT_GET_COMMAND





def check_package_names(packages):
  for package in packages:
    if not isinstance(package, str) or \
        not _PACKAGE_NAME_PATTERN.match(package):
      raise inbd.InvalidRequest('invalid package name: ' + repr(package))



def parse_update_size(output):
  """
  <Purpose>
    Interpret the output of 'apt-get upgrade --assume-no'.

  <Exceptions>
    inbd.Error if the output says neither that nothing is to be done nor how
    much disk space the upgrade takes.

  <Returns>
    (update_available, bytes_needed). bytes_needed is 0 when the upgrade
    frees space.
  """
  size_lines = []
  for line in output.splitlines():
    if NO_UPDATE_AVAILABLE in line:
      return False, 0
    if 'After this operation,' in line:
      size_lines.append(line)

  match = _UPDATE_SIZE_PATTERN.search('\n'.join(size_lines))
  if match is None:
    raise inbd.Error('failed to get size of the update')

  if match.group(5) == 'freed':
    log.info('Update will free some space on disk')
    return True, 0

  size = float(match.group(1).replace(',', ''))
  return True, int(size * _UNIT_FACTORS[match.group(4)])



def full_install_commands(packages):
  commands = [
      [_APT_GET, 'update'],
      [_APT_GET, '-yq', '-f', 'install'],
      list(_DPKG_CONFIGURE)]
  if packages:
    commands.append([_APT_GET, '-yq'] + _CONFFILE_OPTIONS + ['install'] +
        list(packages))
  else:
    commands.append([_APT_GET, '-yq'] + _CONFFILE_OPTIONS +
        ['--with-new-pkgs', 'upgrade'])
  return commands



def no_download_commands(packages):
  commands = [
      list(_DPKG_CONFIGURE),
      [_APT_GET] + _CONFFILE_OPTIONS + ['-yq', '-f', 'install']]
  if packages:
    commands.append([_APT_GET] + _CONFFILE_OPTIONS +
        ['--fix-missing', '-yq', 'install'] + list(packages))
  else:
    commands.append([_APT_GET] + _CONFFILE_OPTIONS +
        ['--with-new-pkgs', '--fix-missing', '-yq', 'upgrade'])
  return commands



def download_only_commands(packages):
  commands = [
      list(_DPKG_CONFIGURE),
      [_APT_GET, 'update']]
  if packages:
    commands.append([_APT_GET] + _CONFFILE_OPTIONS +
        ['--download-only', '--fix-missing', '-yq', 'install'] +
        list(packages))
  else:
    commands.append([_APT_GET] + _CONFFILE_OPTIONS +
        ['--with-new-pkgs', '--download-only', '--fix-missing', '-yq',
        'upgrade'])
  return commands


MODE_COMMANDS = {
    MODE_FULL: full_install_commands,
    MODE_NO_DOWNLOAD: no_download_commands,
    MODE_DOWNLOAD_ONLY: download_only_commands}



def root_filesystem_type(mounts):
  """Return the type of the filesystem mounted at '/' in /proc/mounts text."""
  filesystem_type = ''
  for line in mounts.splitlines():
    fields = line.split()
    if len(fields) >= 3 and fields[1] == '/':
      # Later entries shadow earlier ones.
      filesystem_type = fields[2]
  return filesystem_type





class UbuntuUpdater(object):
  """
  <Purpose>
    Snapshots and apt runs for UpdateSystemSoftware on Ubuntu.

  <Fields>

    self.fileio
      safe_io.SafeIO.

    self.executor
      executor.Executor through which apt-get, dpkg, snapper and truncate
      run.

    self.free_space
      Callable(path) -> free bytes.

    self.state_file_path
      The dispatcher state file.
  """

  def __init__(self, fileio, executor,
      free_space=inbd.downloader.free_disk_space,
      state_file_path=inbd.STATE_FILE_PATH, mounts_path=MOUNTS_PATH):
    self.fileio = fileio
    self.executor = executor
    self.free_space = free_space
    self.state_file_path = state_file_path
    self.mounts_path = mounts_path


  def environment(self):
    env = dict(os.environ)
    env['DEBIAN_FRONTEND'] = 'noninteractive'
    env['PATH'] = env.get('PATH', '') + ':/usr/bin:/bin'
    return env


  def is_btrfs(self):
    mounts = self.fileio.read_kernel_file(self.mounts_path)
    return root_filesystem_type(
        mounts.decode('utf-8', 'replace')) == 'btrfs'


  def is_snapper_installed(self):
    try:
      stdout, _ = self.executor.execute(
          [inbd.executor.SNAPPER_COMMAND, '--version'])
    except inbd.CommandFailed:
      return False
    return bool(stdout.strip())


  def ensure_snapper_config(self):
    stdout, _ = self.executor.execute([inbd.executor.SNAPPER_COMMAND, '-c',
        SNAPPER_CONFIG, 'list-configs'])
    if SNAPPER_CONFIG.encode('utf-8') not in stdout:
      self.executor.execute([inbd.executor.SNAPPER_COMMAND, '-c',
          SNAPPER_CONFIG, 'create-config', '/'])


  def clear_state_file(self):
    self.fileio.mkdir_all(os.path.dirname(self.state_file_path))
    self.executor.execute(
        [inbd.executor.TRUNCATE_COMMAND, '-s', '0', self.state_file_path])


  def snapshot(self):
    """
    <Purpose>
      Take a snapper snapshot of the root filesystem and record its number in
      the state file.

    <Exceptions>
      inbd.PreconditionError
        if the root filesystem is not btrfs or snapper is not installed, so
        no snapshot can be taken.

      inbd.Error, inbd.CommandError and safe I/O errors if taking or
      recording the snapshot fails.

    <Returns>
      The snapshot number.
    """
    if not self.is_btrfs():
      raise inbd.PreconditionError(
          'root filesystem is not btrfs; no snapshot can be taken')

    log.info('OS is Ubuntu and filesystem is btrfs. Taking a snapshot.')
    if not self.is_snapper_installed():
      raise inbd.PreconditionError('snapper is not installed')

    self.clear_state_file()
    self.ensure_snapper_config()

    stdout, stderr = self.executor.execute([inbd.executor.SNAPPER_COMMAND,
        '-c', SNAPPER_CONFIG, 'create', '-p', '--description',
        SNAPSHOT_DESCRIPTION])
    if stderr:
      log.warning('Snapshot command produced stderr: ' +
          stderr.decode('utf-8', 'replace'))

    snapshot_id = stdout.decode('utf-8', 'replace').strip()
    if not snapshot_id:
      raise inbd.Error('snapshot ID is blank')
    try:
      snapshot_number = int(snapshot_id)
    except ValueError as e:
      raise inbd.Error(
          'snapshot ID is not a valid integer: ' + snapshot_id) from e

    state = {'restart_reason': RESTART_REASON,
        'snapshot_number': snapshot_number}
    self.fileio.write_atomic(self.state_file_path, json.dumps(state))
    log.info('Snapshot created successfully. Snapshot ID: ' + snapshot_id)
    return snapshot_number


  def estimate_update_size(self):
    argv = [_APT_GET] + _CONFFILE_OPTIONS + \
        ['--with-new-pkgs', '-u', 'upgrade', '--assume-no']
    try:
      stdout, _ = self.executor.execute(argv, env=self.environment())
    except inbd.CommandFailed as e:
      # --assume-no answers the prompt with 'no', which apt-get reports
      # as a failure.
      stdout = e.stdout

    if not stdout:
      raise inbd.Error(
          'no output from command to determine update size')

    return parse_update_size(stdout.decode('utf-8', 'replace'))


  def update(self, mode=MODE_FULL, packages=None):
    """
    <Purpose>
      Run the apt commands for mode.

    <Arguments>
      mode
        'full', 'no-download' or 'download-only'.

      packages
        Packages to install; if empty, everything upgradable is upgraded.

    <Exceptions>
      inbd.InvalidRequest for an unknown mode or bad package names.
      inbd.InsufficientDiskSpace if the upgrade needs more space than is
      free on '/'.
      inbd.CommandError subclasses if an apt or dpkg command fails.

    <Returns>
      False if there was nothing to upgrade, True otherwise.
    """
    packages = list(packages or [])
    if mode not in MODE_COMMANDS:
      raise inbd.InvalidRequest('invalid mode: ' + repr(mode))
    check_package_names(packages)

    update_available, update_size = self.estimate_update_size()
    if not update_available and not packages:
      log.info('No update available. System is up to date.')
      return False

    log.info('Estimated update size: ' + str(update_size) + ' bytes')
    free_space = self.free_space('/')
    log.info('Free disk space: ' + str(free_space) + ' bytes')
    if free_space < update_size:
      raise inbd.InsufficientDiskSpace('not enough free disk space. Free: ' +
          str(free_space) + ' bytes, Required: ' + str(update_size) + ' bytes')

    env = self.environment()
    for argv in MODE_COMMANDS[mode](packages):
      log.info('Executing command: ' + inbd.executor.render_command(argv))
      _, stderr = self.executor.execute(argv, env=env)
      if stderr:
        log.warning('Command reported: ' + stderr.decode('utf-8', 'replace'))

    return True
