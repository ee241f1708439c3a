"""
<Program Name>
  dispatcher.py

<Purpose>
  The RPC method table of the daemon.

  Each method is registered under its exact RPC name and takes a single
  struct (a dictionary) whose keys are the request's field names. It returns
  a struct with at least 'status_code' and 'error', and, depending on the
  method, 'success', 'value' and 'data':

    SetPowerState             {action}
    UpdateFirmware            {url, signature, hash_algorithm, release_date,
                               do_not_reboot, guid}
    UpdateSystemSoftware      {url, release_date, mode, do_not_reboot,
                               package_list}
    UpdateOSSource            {source_list}
    AddApplicationSource      {filename, source, gpg_key_uri, gpg_key_name}
    RemoveApplicationSource   {filename, gpg_key_name}
    LoadConfig                {uri, signature, hash_algorithm}
    GetConfig, SetConfig,
    AppendConfig, RemoveConfig
                              {path}
    Query                     {option}

  Request structs are checked against the schemas in inbd.formats and then by
  the per-method checks below; failures give 400 responses. Errors from the
  components are turned into responses here, using the status_code of the
  exception class. Nothing other than a response ever reaches the transport:
  unknown methods get 501, and unexpected exceptions are logged and get 500.
"""
import inbd
import inbd.common
import inbd.formats

log = inbd.logging.getLogger('inbd.dispatcher')
log.setLevel(inbd.logging.DEBUG)

SUCCESS = 'Success'





def response(status_code, error, **fields):
  result = {'status_code': status_code, 'error': error}
  result.update(fields)
  return result



def error_response(e, **fields):
  return response(e.status_code, str(e), **fields)





class Dispatcher(object):
  """
  <Purpose>
    Routes RPC calls to the components of the daemon. An instance is
    registered with the XML-RPC server through register_instance(), which
    hands every call to _dispatch().

  <Fields>

    self.power_manager
      power.PowerManager.

    self.firmware_updater
      updaters.firmware.FirmwareUpdater.

    self.os_updater
      updaters.os_updater.OSUpdateOrchestrator.

    self.config_store
      configstore.ConfigStore.

    self.query_handler
      telemetry.query.QueryHandler.

    self.methods
      RPC name -> (request schema, handler).
  """

  def __init__(self, power_manager, firmware_updater, os_updater,
      config_store, query_handler):

    self.power_manager = power_manager
    self.firmware_updater = firmware_updater
    self.os_updater = os_updater
    self.config_store = config_store
    self.query_handler = query_handler

    self.methods = {
        'SetPowerState': (inbd.formats.SET_POWER_STATE_REQUEST_SCHEMA,
            self.set_power_state),
        'UpdateFirmware': (inbd.formats.UPDATE_FIRMWARE_REQUEST_SCHEMA,
            self.update_firmware),
        'UpdateSystemSoftware': (
            inbd.formats.UPDATE_SYSTEM_SOFTWARE_REQUEST_SCHEMA,
            self.update_system_software),
        'UpdateOSSource': (inbd.formats.UPDATE_OS_SOURCE_REQUEST_SCHEMA,
            self.update_os_source),
        'AddApplicationSource': (
            inbd.formats.ADD_APPLICATION_SOURCE_REQUEST_SCHEMA,
            self.add_application_source),
        'RemoveApplicationSource': (
            inbd.formats.REMOVE_APPLICATION_SOURCE_REQUEST_SCHEMA,
            self.remove_application_source),
        'LoadConfig': (inbd.formats.LOAD_CONFIG_REQUEST_SCHEMA,
            self.load_config),
        'GetConfig': (inbd.formats.CONFIG_PATH_REQUEST_SCHEMA,
            self.get_config),
        'SetConfig': (inbd.formats.CONFIG_PATH_REQUEST_SCHEMA,
            self.set_config),
        'AppendConfig': (inbd.formats.CONFIG_PATH_REQUEST_SCHEMA,
            self.append_config),
        'RemoveConfig': (inbd.formats.CONFIG_PATH_REQUEST_SCHEMA,
            self.remove_config),
        'Query': (inbd.formats.QUERY_REQUEST_SCHEMA, self.query)}


  def _dispatch(self, method, params):
    """
    <Purpose>
      Entry point for every XML-RPC call.

    <Arguments>
      method
        The RPC method name.

      params
        Tuple of the call's arguments; exactly one struct is expected.

    <Returns>
      A response struct. Never raises.
    """
    if method not in self.methods:
      log.warning('Call to unknown method ' + repr(method))
      return response(inbd.STATUS_NOT_IMPLEMENTED,
          'method ' + str(method) + ' not implemented')

    log.info('Received ' + method + ' request')

    if len(params) != 1 or not isinstance(params[0], dict):
      return response(inbd.STATUS_BAD_REQUEST,
          method + ' takes exactly one request struct')

    schema, handler = self.methods[method]
    request = params[0]

    try:
      schema.check_match(request)
      result = handler(request, inbd.common.CancelToken())

    except inbd.Error as e:
      log.error(method + ' failed: ' + str(e))
      return error_response(e)

    except Exception:
      log.exception('Unexpected error while handling ' + method)
      return response(inbd.STATUS_SERVER_ERROR,
          'internal error while handling ' + method)

    log.info(method + ' finished with status ' + str(result['status_code']))
    return result


  def set_power_state(self, request, token):
    action = request.get('action', 'POWER_ACTION_UNSPECIFIED')

    if action == 'POWER_ACTION_UNSPECIFIED':
      return response(inbd.STATUS_BAD_REQUEST, 'Power action is required')

    try:
      if action == 'POWER_ACTION_CYCLE':
        self.power_manager.reboot()
      else:
        self.power_manager.shutdown()
    except inbd.Error as e:
      return response(inbd.STATUS_SERVER_ERROR, 'power action ' + action +
          ' failed: ' + str(e))

    return response(inbd.STATUS_OK, 'SUCCESS')


  def update_firmware(self, request, token):
    url = request.get('url', '')
    if not url:
      return response(inbd.STATUS_BAD_REQUEST, 'URL is required')
    inbd.common.validate_url(url)
    if request.get('guid'):
      inbd.common.validate_guid(request['guid'])

    request = dict(request)
    request['hash_algorithm'] = inbd.common.normalize_hash_algorithm(
        request.get('hash_algorithm', ''))

    return self.firmware_updater.update_firmware(request, token)


  def update_system_software(self, request, token):
    if request.get('url'):
      inbd.common.validate_url(request['url'])

    request = dict(request)
    request['mode'] = inbd.formats.DOWNLOAD_MODES[
        request.get('mode') or 'DOWNLOAD_MODE_FULL']

    return self.os_updater.update_system_software(request, token)


  def update_os_source(self, request, token):
    if not request.get('source_list'):
      return response(inbd.STATUS_BAD_REQUEST, 'Source list is empty')
    return self.os_updater.update_os_source(request)


  def add_application_source(self, request, token):
    if request.get('gpg_key_uri'):
      inbd.common.validate_url(request['gpg_key_uri'])
    if not request.get('filename'):
      return response(inbd.STATUS_BAD_REQUEST, 'Filename is empty')
    if not request.get('source'):
      return response(inbd.STATUS_BAD_REQUEST, 'Source list is empty')
    return self.os_updater.add_application_source(request, token)


  def remove_application_source(self, request, token):
    if not request.get('filename'):
      return response(inbd.STATUS_BAD_REQUEST, 'Filename is empty')
    return self.os_updater.remove_application_source(request)


  def load_config(self, request, token):
    uri = request.get('uri', '')
    if not uri:
      return response(inbd.STATUS_BAD_REQUEST, 'uri is required',
          success=False)

    try:
      hash_algorithm = inbd.common.normalize_hash_algorithm(
          request.get('hash_algorithm', ''))
      self.config_store.load(uri, request.get('signature', ''),
          hash_algorithm, token)
    except inbd.Error as e:
      log.error('LoadConfig failed: ' + str(e))
      return error_response(e, success=False)

    return response(inbd.STATUS_OK, '', success=True)


  def get_config(self, request, token):
    path = request.get('path', '')
    if not path.strip():
      return response(inbd.STATUS_BAD_REQUEST, 'path is required',
          success=False, value='')

    try:
      value, errors = self.config_store.get(path)
    except inbd.Error as e:
      log.error('GetConfig failed: ' + str(e))
      return error_response(e, success=False, value='')

    # Some of several paths may be missing; only fail if nothing was found.
    if errors and not value.replace(';', ''):
      return response(inbd.STATUS_SERVER_ERROR, errors, success=False,
          value='')
    return response(inbd.STATUS_OK, errors, success=not errors, value=value)


  def _config_operation(self, name, operation, request):
    path = request.get('path', '')
    if not path.strip():
      return response(inbd.STATUS_BAD_REQUEST, 'path is required',
          success=False)

    try:
      operation(path)
    except inbd.Error as e:
      log.error(name + ' failed: ' + str(e))
      return error_response(e, success=False)

    return response(inbd.STATUS_OK, '', success=True)


  def set_config(self, request, token):
    return self._config_operation('SetConfig', self.config_store.set, request)


  def append_config(self, request, token):
    return self._config_operation(
        'AppendConfig', self.config_store.append, request)


  def remove_config(self, request, token):
    return self._config_operation(
        'RemoveConfig', self.config_store.remove, request)


  def query(self, request, token):
    option = request.get('option', 'QUERY_OPTION_UNSPECIFIED')
    if option == 'QUERY_OPTION_UNSPECIFIED':
      return response(inbd.STATUS_BAD_REQUEST, 'invalid query option',
          success=False, data={})

    try:
      data = self.query_handler.handle_query(
          inbd.formats.QUERY_OPTIONS[option])
    except inbd.Error as e:
      log.error('Query failed: ' + str(e))
      return error_response(e, success=False, data={})

    return response(inbd.STATUS_OK, '', success=True, data=data)
