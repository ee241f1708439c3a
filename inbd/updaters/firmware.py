"""
<Program Name>
  firmware.py

<Purpose>
  The firmware update pipeline behind the UpdateFirmware RPC method:

    1. check the hash algorithm
    2. find the platform in the firmware registry, by the DMI product name
    3. compare the requested release date with the current BIOS date
    4. download the package
    5. verify its signature
    6. unpack it, if it is a tar archive
    7. run the platform's firmware tool on the firmware file
    8. remove the downloaded and extracted files
    9. reboot, unless asked not to

  Every failure ends the pipeline with a response envelope (a dictionary with
  'status_code' and 'error'); nothing is raised to the caller. The whole
  pipeline runs under the privileged-operation lock, so only one firmware or
  OS update runs at a time.

  The firmware tool is named by the registry, so it is not on the executor's
  allow-list; it is run through run_registry_tool(), which logs every such
  invocation.
"""
import inbd
import inbd.common
import inbd.executor

import os
import shlex
import datetime

import iso8601

log = inbd.logging.getLogger('inbd.firmware')
log.setLevel(inbd.logging.DEBUG)

TAR_COMMAND = 'tar'

# Lines of '<tool> -l' output that describe system firmware.
SYSTEM_FIRMWARE_TYPES = ['System Firmware type', 'system-firmware type']

# Extension -> kind of file, for the firmware package and tar listings.
FILE_KINDS = {
    'fv': 'package',
    'cap': 'package',
    'bio': 'package',
    'cert': 'cert',
    'pem': 'cert',
    'crt': 'cert',
    'bin': 'bios'}

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)





def file_kind(filename):
  """Return 'package', 'cert', 'bios' or '' for filename's extension."""
  if '.' not in filename:
    return ''
  return FILE_KINDS.get(filename.rsplit('.', 1)[1].lower(), '')



def files_from_tar_listing(listing):
  """
  <Purpose>
    Find the firmware file and the certificate among the member names that
    'tar -xv' printed, one per line.

  <Returns>
    (firmware_name, cert_name); either is '' if no such member was listed.
    If several qualify, the last listed wins.
  """
  firmware_name = ''
  cert_name = ''
  seen = set()

  for line in listing.splitlines():
    line = line.strip()
    if not line or line in seen:
      continue
    seen.add(line)

    kind = file_kind(line)
    if kind in ('package', 'bios'):
      firmware_name = line
    elif kind == 'cert':
      cert_name = line

  return firmware_name, cert_name



def parse_guids(output, types=SYSTEM_FIRMWARE_TYPES):
  """
  <Purpose>
    Extract GUIDs from firmware tool output such as

      System Firmware type, {6b2af7e1-8f05-4d4a-a8c8-4b5d3c0e8f21}

    Each line mentioning one of types is split on commas; the first token of
    its second field, without braces, is taken if it is a GUID of the canonical
    8-4-4-4-12 form.

  <Returns>
    The GUIDs in output order.
  """
  guids = []
  for line in output.splitlines():
    if not any(firmware_type in line for firmware_type in types):
      continue

    fields = line.split(',')
    if len(fields) < 2:
      continue

    tokens = fields[1].split()
    if not tokens:
      continue

    guid = tokens[0].strip('{}')
    if len(guid) == 36 and guid.count('-') == 4 and \
        inbd.common.is_valid_guid(guid):
      guids.append(guid)

  return guids



def format_time(moment):
  return moment.astimezone(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')



def parse_release_date(release_date):
  """
  Parse the release_date of a request (an ISO 8601 string, or a datetime).
  A missing date is the start of the epoch. Raises inbd.InvalidRequest if it
  cannot be parsed.
  """
  if release_date is None or release_date == '':
    return EPOCH

  if isinstance(release_date, datetime.datetime):
    if release_date.tzinfo is None:
      return release_date.replace(tzinfo=datetime.timezone.utc)
    return release_date

  try:
    return iso8601.parse_date(str(release_date))
  except iso8601.ParseError as e:
    raise inbd.InvalidRequest(
        'invalid release_date ' + repr(release_date) + ': ' + str(e)) from e





def _response(status_code, error):
  return {'status_code': status_code, 'error': error}



class _Abort(Exception):
  """Ends the pipeline with the given response envelope."""
  def __init__(self, status_code, error):
    Exception.__init__(self, error)
    self.response = _response(status_code, error)





def split_tool_args(args):
  """
  Split a registry argument string the way a shell would. Raises _Abort
  (500) when it cannot be split, e.g. for an unbalanced quote.
  """
  try:
    return shlex.split(args)
  except ValueError as e:
    raise _Abort(inbd.STATUS_SERVER_ERROR,
        'firmware update aborted: invalid firmware tool arguments ' +
        repr(args) + ': ' + str(e)) from e





class FirmwareUpdater(object):
  """
  <Purpose>
    Runs the firmware update pipeline.

  <Fields>

    self.fileio
      safe_io.SafeIO for every file removal.

    self.downloader
      downloader.Downloader for the package.

    self.verifier
      sig.SignatureVerifier.

    self.registry
      fw_registry.FirmwareRegistry.

    self.system_info
      Provider of get_hardware_info() and get_firmware_info(), as in
      telemetry.query.QueryHandler.

    self.power_manager
      power.PowerManager used for the final reboot.

    self.run
      Callable with the signature of executor.run_command, used for tar and
      the firmware tool.

    self.download_dir
      Where packages are downloaded and unpacked.

    self.lock
      The privileged-operation lock.
  """

  def __init__(self, fileio, downloader, verifier, registry, system_info,
      power_manager, run=inbd.executor.run_command,
      download_dir=inbd.DOWNLOAD_DIR,
      lock=inbd.common.PRIVILEGED_OPERATION_LOCK):

    self.fileio = fileio
    self.downloader = downloader
    self.verifier = verifier
    self.registry = registry
    self.system_info = system_info
    self.power_manager = power_manager
    self.run = run
    self.download_dir = download_dir
    self.lock = lock


  def update_firmware(self, request, token=None):
    """
    <Purpose>
      Run the pipeline for an UpdateFirmware request.

    <Arguments>
      request
        Dictionary with 'url' and optionally 'signature', 'hash_algorithm',
        'release_date', 'do_not_reboot' and 'guid' (the GUID from the update
        manifest).

      token
        common.CancelToken for the request. Once it is cancelled, remaining
        steps before the firmware tool are abandoned; after the tool has run,
        the reboot is skipped.

    <Returns>
      {'status_code': 200, 'error': 'Success'} on success, and otherwise an
      envelope whose code is 400 (bad request, not required, signature
      failure), 500 (everything else) and whose error says what failed.
    """
    if token is None:
      token = inbd.common.CancelToken()

    try:
      with inbd.common.privileged_operation(self.lock):
        return self._update_firmware(request, token)

    except inbd.UpdateInProgress as e:
      log.warning('Firmware update refused: ' + str(e))
      return _response(e.status_code, str(e))

    except _Abort as e:
      log.error('Firmware update failed: ' + e.response['error'])
      return e.response

    except inbd.Error as e:
      log.error('Firmware update failed: ' + str(e))
      return _response(e.status_code, str(e))


  def _update_firmware(self, request, token):
    log.info('Starting firmware update process.')

    try:
      hash_algorithm = inbd.common.normalize_hash_algorithm(
          request.get('hash_algorithm', ''))
    except inbd.InvalidHashAlgorithm as e:
      raise _Abort(e.status_code, str(e)) from e

    tool_info = self._resolve_platform()
    self._check_update_required(request)
    self._check_cancelled(token)

    url = request.get('url', '')
    try:
      package_path = self.downloader.download(
          url, destination_dir=self.download_dir, token=token)
    except inbd.Error as e:
      raise _Abort(e.status_code, str(e)) from e

    self._verify(request.get('signature', ''), package_path, hash_algorithm,
        token)

    firmware_path = ''
    cert_path = ''
    try:
      self._check_cancelled(token)
      firmware_path, cert_path = self.unpack(package_path)
      self.apply_firmware(firmware_path, tool_info, request.get('guid', ''))

    finally:
      self._delete_files([package_path, firmware_path, cert_path])

    log.info('Update completed successfully.')

    if request.get('do_not_reboot', False):
      log.info('Firmware update completed successfully. Reboot skipped as '
          'requested.')
    elif token.cancelled():
      log.warning('Request was cancelled; skipping reboot after firmware '
          'update')
    else:
      log.info('Firmware update completed successfully. Rebooting system...')
      try:
        self.power_manager.reboot()
      except inbd.Error as e:
        log.warning('Failed to reboot system: ' + str(e))

    return _response(inbd.STATUS_OK, 'Success')


  def _check_cancelled(self, token):
    if token.cancelled():
      raise _Abort(inbd.STATUS_SERVER_ERROR,
          'firmware update aborted: request cancelled')


  def _resolve_platform(self):
    try:
      hardware = self.system_info.get_hardware_info()
      platform_name = hardware.get('system_product_name', '')
      log.info('platform name: ' + repr(platform_name))
      tool_info = self.registry.get_firmware_update_tool_info(platform_name)
    except inbd.Error as e:
      raise _Abort(inbd.STATUS_SERVER_ERROR, str(e)) from e

    log.info('Firmware update tool info: ' + repr(tool_info))
    return tool_info


  def _check_update_required(self, request):
    try:
      requested = parse_release_date(request.get('release_date'))
    except inbd.InvalidRequest as e:
      raise _Abort(e.status_code, str(e)) from e

    current_text = self.system_info.get_firmware_info().get(
        'bios_release_date', '')
    if not current_text:
      log.warning('Current BIOS release date is unknown; proceeding with '
          'the update')
      return

    try:
      current = iso8601.parse_date(current_text)
    except iso8601.ParseError:
      log.warning('Current BIOS release date ' + repr(current_text) +
          ' cannot be parsed; proceeding with the update')
      return

    if current >= requested:
      raise inbd.NotRequired(
          'Firmware update is not required. Current firmware (' +
          format_time(current) + ') is up to date or newer than requested (' +
          format_time(requested) + ').')


  def _verify(self, signature, package_path, hash_algorithm, token):
    try:
      self.verifier.verify(signature, package_path, hash_algorithm, token)

    except inbd.Error as e:
      self._delete_files([package_path])
      if isinstance(e, (inbd.SignatureError, inbd.InputValidationError)):
        status_code = inbd.STATUS_BAD_REQUEST
      else:
        status_code = inbd.STATUS_SERVER_ERROR
      raise _Abort(status_code, 'Signature verification failed: ' + str(e)) \
          from e


  def unpack(self, package_path):
    """
    <Purpose>
      Work out which file to flash. A single firmware file ('fv', 'cap',
      'bio', 'bin') is flashed as it is. Anything else is extracted into the
      download directory with tar, and the firmware file and certificate are
      taken from tar's listing.

    <Exceptions>
      _Abort if extraction fails or the archive holds no firmware file.

    <Returns>
      (firmware_path, cert_path); cert_path is '' if there is none.
    """
    filename = os.path.basename(package_path)
    kind = file_kind(filename)
    log.info('File extension detected: ' + repr(kind) + ' for file: ' +
        filename)

    if kind in ('package', 'bios'):
      return package_path, ''

    log.info('Unpacking file: ' + filename + ' in directory: ' +
        self.download_dir)
    try:
      stdout, _ = self.run([TAR_COMMAND, '-xvf', package_path,
          '--no-same-owner', '-C', self.download_dir])
    except inbd.CommandError as e:
      raise _Abort(inbd.STATUS_SERVER_ERROR,
          'firmware update aborted: invalid file sent. error: ' + str(e)) \
          from e

    firmware_name, cert_name = files_from_tar_listing(
        stdout.decode('utf-8', 'replace'))
    log.info('Extracted files - firmware: ' + repr(firmware_name) +
        ', cert: ' + repr(cert_name))

    cert_path = os.path.join(self.download_dir, cert_name) if cert_name else ''
    if not firmware_name:
      self._delete_files([cert_path])
      raise _Abort(inbd.STATUS_SERVER_ERROR,
          'firmware update aborted: no firmware file found in ' + filename)

    return os.path.join(self.download_dir, firmware_name), cert_path


  def run_registry_tool(self, argv):
    """
    Run a command named by the firmware registry. These bypass the
    executor's allow-list; each one is logged.
    """
    log.info('Running firmware tool from the registry (not allow-listed): ' +
        inbd.executor.render_command(argv))
    return self.run(argv)


  def extract_guid(self, firmware_tool, manifest_guid=''):
    """
    <Purpose>
      Find the system firmware GUID with '<firmware_tool> -l'.

    <Arguments>
      manifest_guid
        The GUID named by the update manifest, or ''. If given, it must be
        among the GUIDs the tool reports.

    <Exceptions>
      _Abort if the tool fails, reports no system firmware GUID, or does not
      report manifest_guid.

    <Returns>
      manifest_guid if given, else the first GUID reported.
    """
    try:
      stdout, _ = self.run_registry_tool([firmware_tool, '-l'])
    except inbd.CommandError as e:
      raise _Abort(inbd.STATUS_SERVER_ERROR,
          'firmware update aborted: failed to list GUIDs: ' + str(e)) from e

    guids = parse_guids(stdout.decode('utf-8', 'replace'))
    log.info('Found GUIDs: ' + repr(guids))

    if not guids:
      raise _Abort(inbd.STATUS_SERVER_ERROR,
          'firmware update aborted: no GUIDs found matching types: ' +
          repr(SYSTEM_FIRMWARE_TYPES))

    if manifest_guid:
      if manifest_guid.lower() in [guid.lower() for guid in guids]:
        return manifest_guid
      raise _Abort(inbd.STATUS_SERVER_ERROR, 'GUID in manifest does not '
          'match any system firmware GUID on the system')

    return guids[0]


  def apply_firmware(self, firmware_path, tool_info, manifest_guid=''):
    """
    <Purpose>
      Flash firmware_path with the tool described by tool_info:

        <firmware_tool> <firmware_tool_args...> [<guid>] <firmware_path>

      If firmware_tool_check_args is set, '<firmware_tool> <check args...>'
      is run first and must succeed.

    <Exceptions>
      _Abort on any failure.
    """
    firmware_tool = tool_info.get('firmware_tool', '')
    if not firmware_tool:
      raise _Abort(inbd.STATUS_SERVER_ERROR,
          'firmware update aborted: no firmware tool configured for platform ' +
          repr(tool_info.get('name')))

    log.info('Applying firmware using tool: ' + firmware_tool)

    if '/' in firmware_tool and not os.path.isfile(firmware_tool):
      raise _Abort(inbd.STATUS_SERVER_ERROR, 'firmware update aborted: '
          'firmware tool does not exist at ' + firmware_tool)

    check_args = tool_info.get('firmware_tool_check_args', '')
    if check_args:
      try:
        self.run_registry_tool(
            [firmware_tool] + split_tool_args(check_args))
      except inbd.CommandError as e:
        raise _Abort(inbd.STATUS_SERVER_ERROR, 'firmware update aborted: '
            'firmware tool check failed: ' + str(e)) from e

    argv = [firmware_tool] + split_tool_args(
        tool_info.get('firmware_tool_args', ''))

    if tool_info.get('guid', False):
      argv.append(self.extract_guid(firmware_tool, manifest_guid))

    argv.append(firmware_path)

    if tool_info.get('tool_options', False):
      log.info('Tool supports options, but none provided in request')

    try:
      stdout, _ = self.run_registry_tool(argv)
    except inbd.CommandFailed as e:
      output = (e.stderr or e.stdout or b'').decode('utf-8', 'replace').strip()
      raise _Abort(inbd.STATUS_SERVER_ERROR, 'firmware update failed: ' +
          (output or 'Firmware command failed')) from e
    except inbd.CommandError as e:
      raise _Abort(inbd.STATUS_SERVER_ERROR,
          'firmware update failed: ' + str(e)) from e

    log.info('Firmware tool output: ' + stdout.decode('utf-8', 'replace'))
    log.info('Apply firmware command successful.')


  def _delete_files(self, paths):
    for path in paths:
      if not path:
        continue
      try:
        if self.fileio.exists(path):
          self.fileio.remove(path)
          log.info('Deleted file: ' + path)
      except inbd.SafeIOError as e:
        log.warning('Failed to delete file ' + path + ': ' + str(e))
