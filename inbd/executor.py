"""
<Program Name>
  executor.py

<Purpose>
  Runs external programs for the daemon.

  Executor.execute() only runs programs whose argv[0] is, exactly, one of
  ALLOWED_COMMANDS. Arguments are passed as separate argv entries and never
  through a shell. Output is returned as bytes, undecoded.

  run_command() is the lower-level helper that Executor uses once a command
  has been approved. It is also used directly for the few programs whose
  names are not fixed in advance (the firmware tool named by the platform
  registry) or that only read system information (lsblk, dpkg-query, rpm).
"""
import inbd

import shlex
import subprocess

log = inbd.logging.getLogger('inbd.executor')
log.setLevel(inbd.logging.DEBUG)


REBOOT_COMMAND = '/usr/sbin/reboot'
SHUTDOWN_COMMAND = '/usr/sbin/shutdown'
TRUNCATE_COMMAND = 'truncate'
OS_UPDATE_TOOL_COMMAND = '/usr/bin/os-update-tool.sh'
GPG_COMMAND = '/usr/bin/gpg'
IP_COMMAND = 'ip'
SNAPPER_COMMAND = 'snapper'
APT_GET_COMMAND = '/usr/bin/apt-get'
DPKG_COMMAND = '/usr/bin/dpkg'
UMOUNT_COMMAND = '/usr/bin/umount'
CRYPTSETUP_COMMAND = '/usr/sbin/cryptsetup'

ALLOWED_COMMANDS = frozenset([
    REBOOT_COMMAND,
    SHUTDOWN_COMMAND,
    TRUNCATE_COMMAND,
    OS_UPDATE_TOOL_COMMAND,
    GPG_COMMAND,
    IP_COMMAND,
    SNAPPER_COMMAND,
    APT_GET_COMMAND,
    DPKG_COMMAND,
    UMOUNT_COMMAND,
    CRYPTSETUP_COMMAND])





def render_command(argv):
  """Return argv as a single shell-quoted string, for messages only."""
  return shlex.join([str(arg) for arg in argv])





def run_command(argv, command_factory=subprocess.Popen, timeout=None,
    env=None):
  """
  <Purpose>
    Run argv (no shell) and wait for it to finish, capturing stdout and stderr
    separately.

  <Arguments>
    argv
      List of strings; argv[0] is the program.

    command_factory
      A callable with the signature of subprocess.Popen returning an object
      with communicate() and returncode. Tests pass a fake here.

    timeout
      Seconds to wait before killing the program, or None (the default) to
      wait for as long as it takes.

    env
      Environment for the program, or None to inherit the daemon's.

  <Exceptions>
    inbd.CommandFailed
      if the program cannot be started or exits with a non-zero status. The
      message includes the rendered command line and stderr.

    inbd.CommandTimeout
      if timeout expires.

  <Returns>
    (stdout, stderr), both bytes.
  """
  rendered = render_command(argv)
  log.debug('Running command: ' + rendered)

  try:
    process = command_factory(
        list(argv), stdin=subprocess.DEVNULL, stdout=subprocess.PIPE,
        stderr=subprocess.PIPE, env=env)
  except OSError as e:
    raise inbd.CommandFailed(
        'unable to run command ' + repr(rendered) + ': ' + str(e)) from e

  try:
    stdout, stderr = process.communicate(timeout=timeout)
  except subprocess.TimeoutExpired as e:
    process.kill()
    process.communicate()
    raise inbd.CommandTimeout(
        'command ' + repr(rendered) + ' timed out after ' + str(timeout) +
        ' seconds') from e

  stdout = stdout or b''
  stderr = stderr or b''

  if process.returncode != 0:
    raise inbd.CommandFailed(
        'command ' + repr(rendered) + ' failed with exit status ' +
        str(process.returncode) + ': ' +
        stderr.decode('utf-8', 'replace').strip(),
        returncode=process.returncode, stdout=stdout, stderr=stderr)

  return stdout, stderr





class Executor(object):
  """
  <Purpose>
    Runs only allow-listed programs.

  <Fields>

    self.allowed_commands
      The exact argv[0] values that may be run. Comparison is exact and
      case-sensitive; relative names are only accepted where they are listed
      as such.

    self.command_factory
      Passed to run_command(); subprocess.Popen unless a test replaces it.
  """

  def __init__(self, allowed_commands=ALLOWED_COMMANDS,
      command_factory=subprocess.Popen):
    self.allowed_commands = frozenset(allowed_commands)
    self.command_factory = command_factory


  def is_allowed(self, command):
    return command in self.allowed_commands


  def execute(self, argv, timeout=None, env=None):
    """
    <Purpose>
      Run argv if argv[0] is allow-listed. See run_command() for the
      arguments, exceptions and return value.

    <Exceptions>
      inbd.CommandNotAllowed
        if argv is empty (reported command: '') or argv[0] is not listed.
        Nothing is run in that case.
    """
    command = argv[0] if argv else ''

    if not argv or not self.is_allowed(command):
      log.error('Refusing to run command not on the allow-list: ' +
          repr(command))
      raise inbd.CommandNotAllowed(
          'command not allowed: ' + repr(command))

    return run_command(argv, command_factory=self.command_factory,
        timeout=timeout, env=env)
