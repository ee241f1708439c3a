"""
<Program Name>
  os_updater.py

<Purpose>
  The OS update orchestrator behind UpdateSystemSoftware, UpdateOSSource,
  AddApplicationSource and RemoveApplicationSource.

  Each request is dispatched by the host distribution, as detected from
  /etc/os-release. Ubuntu is the only distribution supported; any other gets
  a 415 response.

  As with the firmware pipeline, every outcome is a response envelope
  ({'status_code': ..., 'error': ...}); nothing is raised to the caller.
  UpdateSystemSoftware runs under the privileged-operation lock shared with
  firmware updates.
"""
import inbd
import inbd.common
import inbd.updaters.ubuntu

log = inbd.logging.getLogger('inbd.os_updater')
log.setLevel(inbd.logging.DEBUG)

SUPPORTED_OS = 'Ubuntu'





def _response(status_code, error):
  return {'status_code': status_code, 'error': error}



def _error_response(e):
  return _response(e.status_code, str(e))





class OSUpdateOrchestrator(object):
  """
  <Purpose>
    Dispatches OS update requests to the updaters of the host distribution.

  <Fields>

    self.fileio
      safe_io.SafeIO, for reading os-release.

    self.config_store
      configstore.ConfigStore, for os_updater.proceedWithoutRollback.

    self.ubuntu_updater
      ubuntu.UbuntuUpdater.

    self.sources_manager
      sources.SourcesManager.

    self.power_manager
      power.PowerManager used for the reboot after an update.

    self.os_release_path
      Location of os-release.

    self.lock
      The privileged-operation lock.
  """

  def __init__(self, fileio, config_store, ubuntu_updater, sources_manager,
      power_manager, os_release_path=inbd.OS_RELEASE_PATH,
      lock=inbd.common.PRIVILEGED_OPERATION_LOCK):

    self.fileio = fileio
    self.config_store = config_store
    self.ubuntu_updater = ubuntu_updater
    self.sources_manager = sources_manager
    self.power_manager = power_manager
    self.os_release_path = os_release_path
    self.lock = lock


  def check_os(self):
    """
    <Purpose>
      Detect the host distribution.

    <Exceptions>
      inbd.UnsupportedOS if it is not Ubuntu.
      Safe I/O errors if os-release cannot be read.
    """
    os_name = inbd.common.detect_os(self.fileio, self.os_release_path)
    if os_name != SUPPORTED_OS:
      raise inbd.UnsupportedOS('unsupported OS: ' + repr(os_name))
    return os_name


  def update_system_software(self, request, token=None):
    """
    <Purpose>
      Update the system's packages.

      On Ubuntu: snapshot the root filesystem, then run apt in the requested
      mode, then reboot unless nothing was installed, the mode is
      download-only, do_not_reboot is set, or the request was cancelled. If
      no snapshot can be taken, the
      update only goes ahead when os_updater.proceedWithoutRollback is true
      in the configuration document.

    <Arguments>
      request
        Dictionary with optionally 'url' (https only), 'mode' ('full',
        'no-download' or 'download-only'; the dispatcher maps the RPC enum),
        'package_list' and 'do_not_reboot'.

      token
        common.CancelToken for the request.

    <Returns>
      A response envelope; 200 with error 'Success' on success.
    """
    if token is None:
      token = inbd.common.CancelToken()

    try:
      with inbd.common.privileged_operation(self.lock):
        return self._update_system_software(request, token)

    except inbd.Error as e:
      log.error('System software update failed: ' + str(e))
      return _error_response(e)


  def _update_system_software(self, request, token):
    log.info('Starting system software update.')

    if request.get('url'):
      inbd.common.validate_url(request['url'])

    self.check_os()

    mode = request.get('mode') or inbd.updaters.ubuntu.MODE_FULL
    packages = request.get('package_list') or []

    try:
      snapshot_number = self.ubuntu_updater.snapshot()
      log.info('Snapshot ' + str(snapshot_number) + ' taken before update')

    except inbd.Error as e:
      if not self.config_store.get_value(
          'os_updater.proceedWithoutRollback', False):
        return _response(inbd.STATUS_SERVER_ERROR,
            'proceedWithoutRollback configuration flag is false; can not '
            'proceed as snapshot failed: ' + str(e))
      log.warning('Snapshot failed; proceeding without rollback: ' + str(e))

    if token.cancelled():
      return _response(inbd.STATUS_SERVER_ERROR,
          'system software update aborted: request cancelled')

    updated = self.ubuntu_updater.update(mode, packages)

    if not updated:
      log.info('Nothing was installed; no reboot needed.')
    elif mode == inbd.updaters.ubuntu.MODE_DOWNLOAD_ONLY:
      log.info('Download-only update completed; no reboot needed.')
    elif request.get('do_not_reboot', False):
      log.info('System software update completed. Reboot skipped as '
          'requested.')
    elif token.cancelled():
      log.warning('Request was cancelled; skipping reboot after system '
          'software update')
    else:
      log.info('System software update completed. Rebooting system...')
      try:
        self.power_manager.reboot()
      except inbd.Error as e:
        log.warning('Failed to reboot system: ' + str(e))

    return _response(inbd.STATUS_OK, 'Success')


  def update_os_source(self, request):
    """Replace /etc/apt/sources.list with request['source_list']."""
    try:
      with inbd.common.privileged_operation(self.lock):
        self.check_os()
        self.sources_manager.update_os_source(
            request.get('source_list') or [])
    except inbd.Error as e:
      log.error('Updating OS source failed: ' + str(e))
      return _error_response(e)
    return _response(inbd.STATUS_OK, 'Success')


  def add_application_source(self, request, token=None):
    try:
      with inbd.common.privileged_operation(self.lock):
        self.check_os()
        self.sources_manager.add_application_source(
            request.get('filename', ''), request.get('source') or [],
            gpg_key_uri=request.get('gpg_key_uri', ''),
            gpg_key_name=request.get('gpg_key_name', ''), token=token)
    except inbd.Error as e:
      log.error('Adding application source failed: ' + str(e))
      return _error_response(e)
    return _response(inbd.STATUS_OK, 'Success')


  def remove_application_source(self, request):
    try:
      with inbd.common.privileged_operation(self.lock):
        self.check_os()
        self.sources_manager.remove_application_source(
            request.get('filename', ''),
            gpg_key_name=request.get('gpg_key_name', ''))
    except inbd.Error as e:
      log.error('Removing application source failed: ' + str(e))
      return _error_response(e)
    return _response(inbd.STATUS_OK, 'Success')
