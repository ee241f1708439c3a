"""
<Program Name>
  power.py

<Purpose>
  Reboots and shuts down the host through the allow-listed executor.

  Before either, a pre-shutdown hook runs. In the daemon this is
  LUKSVolumeHook, which unmounts and closes the encrypted volume holding the
  PKI secrets if the configuration names one. A failing hook is logged and
  does not stop the reboot or shutdown.
"""
import inbd
import inbd.executor

import time

log = inbd.logging.getLogger('inbd.power')
log.setLevel(inbd.logging.DEBUG)

# Seconds between the hook and the reboot/shutdown command, so that the RPC
# response can reach the caller.
POWER_ACTION_DELAY = 2





class LUKSVolumeHook(object):
  """
  <Purpose>
    Pre-shutdown hook that unmounts the LUKS volume at luks.mountPoint and
    closes its mapping luks.mapperName, as configured in the configuration
    document. Does nothing if the volume is not configured.

  <Fields>

    self.config_store
      configstore.ConfigStore from which the luks settings are read.

    self.executor
      executor.Executor used for umount and cryptsetup.
  """

  def __init__(self, config_store, executor):
    self.config_store = config_store
    self.executor = executor


  def __call__(self):
    luks = self.config_store.get_value('luks', {})
    if not isinstance(luks, dict) or not luks.get('mountPoint'):
      log.debug('No LUKS volume configured; nothing to unmount')
      return

    mount_point = luks['mountPoint']
    errors = []

    log.info('Unmounting LUKS volume at ' + mount_point)
    try:
      self.executor.execute([inbd.executor.UMOUNT_COMMAND, mount_point])
    except inbd.CommandError as e:
      log.info('Normal unmount failed (' + str(e) + '); retrying with lazy '
          'unmount')
      try:
        self.executor.execute(
            [inbd.executor.UMOUNT_COMMAND, '-l', mount_point])
      except inbd.CommandError as e:
        errors.append('failed to unmount LUKS volume: ' + str(e))

    if luks.get('mapperName'):
      log.info('Closing LUKS volume ' + luks['mapperName'])
      try:
        self.executor.execute([inbd.executor.CRYPTSETUP_COMMAND, 'luksClose',
            luks['mapperName']])
      except inbd.CommandError as e:
        errors.append('failed to close LUKS volume: ' + str(e))

    if errors:
      raise inbd.CommandFailed('; '.join(errors))





class PowerManager(object):
  """
  <Purpose>
    Reboot and shutdown.

  <Fields>

    self.executor
      executor.Executor through which the reboot and shutdown commands run.

    self.pre_shutdown_hook
      Callable run before each action, or None.

    self.sleep
      time.sleep unless replaced by tests.

    self.delay
      Seconds to wait between the hook and the command.
  """

  def __init__(self, executor, pre_shutdown_hook=None, sleep=time.sleep,
      delay=POWER_ACTION_DELAY):
    self.executor = executor
    self.pre_shutdown_hook = pre_shutdown_hook
    self.sleep = sleep
    self.delay = delay


  def _run_hook(self):
    if self.pre_shutdown_hook is None:
      return
    try:
      self.pre_shutdown_hook()
    except inbd.Error as e:
      log.warning('Pre-shutdown hook failed; continuing: ' + str(e))


  def reboot(self):
    """
    <Purpose>
      Run the pre-shutdown hook, wait self.delay seconds, then run
      /usr/sbin/reboot.

    <Exceptions>
      inbd.CommandError subclasses if the reboot command cannot be run or
      fails.
    """
    log.info('Rebooting')
    self._run_hook()
    self.sleep(self.delay)
    self.executor.execute([inbd.executor.REBOOT_COMMAND])


  def shutdown(self):
    """Like reboot(), but runs '/usr/sbin/shutdown now'."""
    log.info('Shutting down')
    self._run_hook()
    self.sleep(self.delay)
    self.executor.execute([inbd.executor.SHUTDOWN_COMMAND, 'now'])
