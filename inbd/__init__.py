"""
<Program Name>
  __init__.py

<Purpose>
  Defines inbd common constants, exceptions, logging configuration, etc.

  Every exception class carries a status_code, the HTTP-style integer that the
  RPC dispatcher places in the response envelope when that error reaches it.
"""
import logging, time # both for logging
import os

__version__ = '1.0.0'

WORKING_DIR = os.getcwd()


### Response status codes
STATUS_OK = 200
STATUS_BAD_REQUEST = 400
STATUS_UNSUPPORTED_MEDIA = 415
STATUS_SERVER_ERROR = 500
STATUS_NOT_IMPLEMENTED = 501


### Well-known paths on the host
CONFIG_FILE_PATH = '/etc/intel_manageability.conf'
CONFIG_FILE_NAME = 'intel_manageability.conf'
CONFIG_SCHEMA_PATH = '/usr/share/inbd_schema.json'
FIRMWARE_TOOL_INFO_PATH = '/etc/firmware_tool_info.conf'
FIRMWARE_TOOL_INFO_SCHEMA_PATH = '/usr/share/firmware_tool_config_schema.json'
OTA_PACKAGE_CERT_PATH = '/etc/ota_package_cert.pem'
DOWNLOAD_DIR = '/var/cache/manageability/repository-tool/sota'
PUBLIC_DIR = '/etc/intel-manageability/public'
DEFAULT_SECRET_DIR = '/etc/intel-manageability/secret'
SOURCES_LIST_PATH = '/etc/apt/sources.list'
SOURCES_LIST_DIR = '/etc/apt/sources.list.d'
KEYRINGS_DIR = '/usr/share/keyrings'
STATE_FILE_PATH = '/var/intel-manageability/dispatcher_state'
OS_RELEASE_PATH = '/etc/os-release'
DEFAULT_SOCKET_PATH = '/var/run/inbd.sock'
LOG_FILE_PATH = '/var/log/inbd.log'

# Group whose members may connect to the daemon's socket.
INBC_GROUP = 'inbc'





### Exceptions
class Error(Exception):
  """
  Base class for all inbd-specific exceptions.
  """
  status_code = STATUS_SERVER_ERROR

class FormatError(Error):
  """
  A value (usually an RPC argument or a JSON document) did not match the
  schema it was checked against.
  """
  status_code = STATUS_BAD_REQUEST


## Input validation
class InputValidationError(Error):
  """A request argument is missing or malformed."""
  status_code = STATUS_BAD_REQUEST

class PathRequired(InputValidationError):
  """A config path was empty or whitespace-only."""
  pass

class InvalidURL(InputValidationError):
  """A URL is not an absolute https URL with a host."""
  pass

class InvalidHashAlgorithm(InputValidationError):
  """The hash algorithm is not one of sha256, sha384 or sha512."""
  pass

class EmptySourceList(InputValidationError):
  pass

class InvalidGUID(InputValidationError):
  """A GUID is not in the canonical 8-4-4-4-12 hexadecimal form."""
  pass

class InvalidRequest(InputValidationError):
  """A request field other than the ones above is missing or unusable."""
  pass

class UntrustedRepository(InputValidationError):
  """
  A download URL does not start with any of the trusted repositories listed
  under os_updater.trustedRepositories in the configuration document.
  """
  pass

class InvalidPackage(InputValidationError):
  """
  A firmware package archive contains entries that are not regular files, or
  files of a type that is not permitted.
  """
  pass


## Preconditions
class PreconditionError(Error):
  status_code = STATUS_BAD_REQUEST

class UnsupportedOS(PreconditionError):
  """The host distribution is not one the OS updater supports."""
  status_code = STATUS_UNSUPPORTED_MEDIA

class PlatformNotFound(PreconditionError):
  """The host's product name has no record in the firmware registry."""
  status_code = STATUS_SERVER_ERROR

class NotRequired(PreconditionError):
  """The host firmware is already as new as the requested release."""
  pass

class UnsupportedQueryOption(PreconditionError):
  pass

class UpdateInProgress(PreconditionError):
  """Another privileged operation already holds the update lock."""
  status_code = STATUS_SERVER_ERROR


## Safe-I/O
class SafeIOError(Error):
  """
  Base class for failures of the safe I/O layer. These are never retried and
  are reported as server errors.
  """
  pass

class PathOutsideAllowedBase(SafeIOError):
  pass

class SymlinkRejected(SafeIOError):
  pass

class FileTooLarge(SafeIOError):
  pass

class FileTooSmall(SafeIOError):
  pass

class BinaryContent(SafeIOError):
  pass

class JsonNestingTooDeep(SafeIOError):
  pass

class JsonTooManyProperties(SafeIOError):
  pass

class PermissionDenied(SafeIOError):
  pass

class Locked(SafeIOError):
  """The file is locked by another process (EAGAIN)."""
  pass

class ReadOnlyFilesystem(SafeIOError):
  pass

class DeviceBusy(SafeIOError):
  pass

class Interrupted(SafeIOError):
  pass

class FileNotFound(SafeIOError):
  pass


## Configuration
class ConfigError(Error):
  pass

class ConfigValidationFailed(ConfigError):
  """
  Applying the requested change would leave the configuration document
  invalid according to its schema. The document on disk is left untouched.
  """
  status_code = STATUS_BAD_REQUEST

class AppendNotSupported(ConfigError):
  status_code = STATUS_BAD_REQUEST

class RemoveNotSupported(ConfigError):
  status_code = STATUS_BAD_REQUEST

class UnmarshalFailed(ConfigError):
  """The document on disk could not be parsed as JSON."""
  pass


## Signatures
class SignatureError(Error):
  status_code = STATUS_BAD_REQUEST

class SignatureMissing(SignatureError):
  """A signing certificate is installed but the request carried no signature."""
  pass

class SignatureFormatInvalid(SignatureError):
  pass

class SignatureMismatch(SignatureError):
  """The signature does not verify under any of the supported hashes."""
  pass

class WeakKey(SignatureError):
  pass

class CertificateInvalid(SignatureError):
  pass

class VerificationTimeout(SignatureError):
  pass


## Downloads
class DownloadFailed(Error):
  pass

class InsufficientDiskSpace(Error):
  pass


## Command execution
class CommandError(Error):
  pass

class CommandNotAllowed(CommandError):
  """argv[0] is not on the executor's allow-list."""
  pass

class CommandFailed(CommandError):
  """
  A command exited with a non-zero status. The message contains the rendered
  command line and the command's stderr.
  """
  def __init__(self, message, returncode=None, stdout=b'', stderr=b''):
    super(CommandFailed, self).__init__(message)
    self.returncode = returncode
    self.stdout = stdout
    self.stderr = stderr

class CommandTimeout(CommandError):
  pass


## Transport
class TransportError(Error):
  """
  Failures setting up or serving the RPC socket. Fatal at start-up; for a
  single connection, the connection is dropped.
  """
  pass

class ListenError(TransportError):
  pass

class RemoveSocketError(TransportError):
  pass

class TLSSetupError(TransportError):
  pass

class TLSHandshakeError(TransportError):
  pass





# Logging configuration

## General logging configuration:
_FORMAT_STRING = '[%(asctime)sUTC] [%(name)s] %(levelname)s '+\
    '[%(filename)s:%(funcName)s():%(lineno)s]\n%(message)s\n'
_TIME_STRING = "%Y.%m.%d %H:%M:%S"

logging.Formatter.converter = time.gmtime

## Console logging configuration:
console_handler = logging.StreamHandler()
console_handler.setLevel(logging.INFO)
console_handler.setFormatter(logging.Formatter(_FORMAT_STRING, _TIME_STRING))

## File logging is only set up by the daemon, see add_file_handler().
file_handler = None

## Logger instantiation
logger = logging.getLogger('inbd')
logger.addHandler(console_handler)
logger.setLevel(logging.DEBUG)



def add_file_handler(log_filename=LOG_FILE_PATH):
  """
  Attach a file handler writing to log_filename to the package logger. Every
  module logger is a child of 'inbd', so this covers the whole daemon.
  Calling this more than once replaces the previous file handler.
  """
  global file_handler

  if file_handler is not None:
    logger.removeHandler(file_handler)
    file_handler.close()

  file_handler = logging.FileHandler(log_filename)
  file_handler.setLevel(logging.DEBUG)
  file_handler.setFormatter(logging.Formatter(_FORMAT_STRING, _TIME_STRING))
  logger.addHandler(file_handler)

  return file_handler
