"""
<Program Name>
  daemon.py

<Purpose>
  Entry point of the in-band management daemon.

    inbd [-s SOCKET_PATH]

  Startup:
    1. log to /var/log/inbd.log as well as the console
    2. validate the configuration document against its schema
    3. create the local CA and service certificates if they are missing
    4. listen on the UNIX socket (default /var/run/inbd.sock)

  Any failure during startup ends the process with exit status 1. SIGTERM or
  SIGINT stops the listener, closes the LUKS volume (if configured) and ends
  the process with exit status 0.
"""
import inbd
import inbd.safe_io
import inbd.executor
import inbd.configstore
import inbd.sig
import inbd.downloader
import inbd.power
import inbd.pki
import inbd.telemetry.query
import inbd.updaters.fw_registry
import inbd.updaters.firmware
import inbd.updaters.ubuntu
import inbd.updaters.sources
import inbd.updaters.os_updater
import inbd.services.dispatcher
import inbd.services.server

import sys
import signal
import argparse
import threading

log = inbd.logging.getLogger('inbd.daemon')
log.setLevel(inbd.logging.DEBUG)

EXIT_OK = 0
EXIT_FAILURE = 1

# How often the main thread checks whether the server thread has died.
_WAIT_INTERVAL_SECONDS = 1





def parse_arguments(argv=None):
  parser = argparse.ArgumentParser(prog='inbd',
      description='In-band management daemon')
  parser.add_argument('-s', dest='socket_path',
      default=inbd.DEFAULT_SOCKET_PATH, help='UNIX domain socket path')
  return parser.parse_args(argv)



def enable_file_logging(fileio, log_path=inbd.LOG_FILE_PATH):
  """Add the daemon's log file, warning rather than failing if it is not
  usable."""
  try:
    fileio.check_path(log_path)
    inbd.add_file_handler(log_path)
  except (inbd.SafeIOError, OSError) as e:
    log.warning('Logging to console only; unable to use log file ' +
        log_path + ': ' + str(e))





class Daemon(object):
  """
  <Purpose>
    Builds the daemon's components and runs the listener.

  <Fields>

    self.socket_path
      Where the listener's socket is created.

    self.fileio, self.executor
      The safe I/O layer and allow-listed executor shared by all components.

    self.config_store, self.power_manager, self.dispatcher, ...
      The components, wired together in __init__.

    self.server
      The services.server.UnixTLSXMLRPCServer, once start() has run.
  """

  def __init__(self, socket_path=inbd.DEFAULT_SOCKET_PATH,
      config_path=inbd.CONFIG_FILE_PATH, public_dir=inbd.PUBLIC_DIR,
      group=inbd.INBC_GROUP, key_size=inbd.pki.KEY_SIZE, fileio=None,
      executor=None):

    self.socket_path = socket_path
    self.public_dir = public_dir
    self.group = group
    self.key_size = key_size
    self.server = None
    self._server_thread = None
    self.stop_event = threading.Event()

    if fileio is None:
      fileio = inbd.safe_io.SafeIO()
    if executor is None:
      executor = inbd.executor.Executor()
    self.fileio = fileio
    self.executor = executor

    self.verifier = inbd.sig.SignatureVerifier(fileio)
    self.config_store = inbd.configstore.ConfigStore(
        fileio, verifier=self.verifier, config_path=config_path)
    self.downloader = inbd.downloader.Downloader(fileio,
        trusted_repositories=self.config_store.trusted_repositories)
    self.config_store.downloader = self.downloader

    self.luks_hook = inbd.power.LUKSVolumeHook(self.config_store, executor)
    self.power_manager = inbd.power.PowerManager(
        executor, pre_shutdown_hook=self.luks_hook)

    self.query_handler = inbd.telemetry.query.QueryHandler(fileio)

    self.firmware_updater = inbd.updaters.firmware.FirmwareUpdater(fileio,
        self.downloader, self.verifier,
        inbd.updaters.fw_registry.FirmwareRegistry(fileio),
        self.query_handler, self.power_manager)

    self.os_updater = inbd.updaters.os_updater.OSUpdateOrchestrator(fileio,
        self.config_store,
        inbd.updaters.ubuntu.UbuntuUpdater(fileio, executor),
        inbd.updaters.sources.SourcesManager(
            fileio, executor, self.downloader),
        self.power_manager)

    self.dispatcher = inbd.services.dispatcher.Dispatcher(self.power_manager,
        self.firmware_updater, self.os_updater, self.config_store,
        self.query_handler)


  def start(self):
    """
    <Purpose>
      Validate the configuration, set up the certificates and listen.

    <Exceptions>
      inbd.Error (configuration, safe I/O, TLS and transport errors) if
      any step fails.
    """
    self.config_store.validate()
    log.info('Configuration document ' + self.config_store.config_path +
        ' is valid')

    pki = inbd.pki.PKIBootstrapper(self.fileio,
        secret_dir=inbd.pki.secret_dir_from_config(self.config_store),
        public_dir=self.public_dir, key_size=self.key_size)
    pki.ensure()

    ssl_context = inbd.services.server.server_ssl_context(
        pki.certificate_path('inbd'), pki.key_path('inbd'),
        pki.ca_certificate_path())

    server = inbd.services.server.UnixTLSXMLRPCServer(self.socket_path,
        ssl_context, self.dispatcher, group=self.group)
    server.listen()

    self.server = server
    self._server_thread = threading.Thread(
        target=server.serve_forever, name='inbd-server', daemon=True)
    self._server_thread.start()


  def request_stop(self, signum=None, frame=None):
    if signum is not None:
      log.info('Received signal ' + str(signum) + ', cleaning up...')
    self.stop_event.set()


  def wait(self):
    """
    Block until request_stop() is called or the server thread ends. Returns
    True for a requested stop, False if the server thread died.
    """
    while not self.stop_event.wait(_WAIT_INTERVAL_SECONDS):
      if not self._server_thread.is_alive():
        log.error('Server stopped unexpectedly')
        return False
    return True


  def stop(self):
    # self.server is only set once serve_forever() is running; shutdown()
    # would wait forever otherwise.
    if self.server is not None:
      self.server.shutdown()
      self.server.server_close()
      self.server = None

    try:
      self.luks_hook()
    except inbd.Error as e:
      log.warning('Failed to remove LUKS volume: ' + str(e))





def main(argv=None):
  arguments = parse_arguments(argv)

  daemon = Daemon(socket_path=arguments.socket_path)
  enable_file_logging(daemon.fileio)

  try:
    daemon.start()
  except inbd.Error as e:
    log.error('Startup failed: ' + str(e))
    daemon.stop()
    return EXIT_FAILURE

  signal.signal(signal.SIGTERM, daemon.request_stop)
  signal.signal(signal.SIGINT, daemon.request_stop)

  clean = daemon.wait()
  daemon.stop()
  return EXIT_OK if clean else EXIT_FAILURE



if __name__ == '__main__':
  sys.exit(main())
