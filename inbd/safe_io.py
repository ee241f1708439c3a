"""
<Program Name>
  safe_io.py

<Purpose>
  The single funnel through which the daemon touches the filesystem.

  The daemon runs as root on a host whose filesystem may be writable by less
  privileged processes between two steps of an operation. Every read, write,
  directory creation, copy and removal made by inbd goes through a SafeIO
  object, which applies the same checks to every path, in this order:

    1. The path is absolute and lies under one of ALLOWED_BASE_DIRS. File
       operations reject the base directory itself; mkdir_all accepts it.
    2. The path contains no '..' components.
    3. The path is no longer than MAX_PATH_LENGTH characters.
    4. No symbolic links: an existing path must already be canonical, and for
       a path that does not exist yet, every existing ancestor must be.

  Reads are further limited to files between MIN_FILE_SIZE and MAX_FILE_SIZE
  bytes, and reads of text or JSON reject binary content and JSON documents
  that are too deeply nested or have too many properties. Every file opened
  is re-checked after opening to make sure the handle refers to the same file
  that was checked.

  A small, explicit set of kernel-exported files (DMI attributes and a few
  /proc entries) may be read through read_kernel_file() even though they are
  outside the allowed directories and may be symlinks. They can never be
  written.
"""
import inbd

import os
import stat
import errno
import json
import shutil
import tempfile

log = inbd.logging.getLogger('inbd.safe_io')
log.setLevel(inbd.logging.DEBUG)


ALLOWED_BASE_DIRS = [
    '/etc',
    '/tmp',
    '/usr/share',
    inbd.DOWNLOAD_DIR,
    '/var/intel-manageability',
    '/var/log']

MAX_PATH_LENGTH = 4096
MAX_FILE_SIZE = 1024 * 1024 # 1 MiB
MIN_FILE_SIZE = 2
MAX_JSON_DEPTH = 100
MAX_JSON_PROPERTIES = 10000

# Control characters permitted in text: tab, newline, form feed, carriage return
_ALLOWED_CONTROL_BYTES = frozenset([0x09, 0x0a, 0x0c, 0x0d])
_BINARY_BYTES = bytes(
    b for b in range(0x20) if b not in _ALLOWED_CONTROL_BYTES)

DMI_DIR = '/sys/class/dmi/id'
DEVICE_TREE_BIOS_DIR = '/proc/device-tree/firmware/bios'

# Read-only, may be symlinks, exempt from the base directory check.
# /etc/os-release is usually a link into /usr/lib.
KERNEL_READ_ONLY_PATHS = frozenset([
    inbd.OS_RELEASE_PATH,
    DMI_DIR + '/bios_vendor',
    DMI_DIR + '/bios_version',
    DMI_DIR + '/bios_date',
    DMI_DIR + '/product_name',
    DMI_DIR + '/sys_vendor',
    DEVICE_TREE_BIOS_DIR + '/bios-vendor',
    DEVICE_TREE_BIOS_DIR + '/bios-version',
    DEVICE_TREE_BIOS_DIR + '/bios-release-date',
    '/proc/cpuinfo',
    '/proc/meminfo',
    '/proc/version',
    '/proc/mounts',
    '/sys/power/state'])

_ERRNO_TO_ERROR = {
    errno.EACCES: inbd.PermissionDenied,
    errno.EPERM: inbd.PermissionDenied,
    errno.EAGAIN: inbd.Locked,
    errno.EROFS: inbd.ReadOnlyFilesystem,
    errno.EBUSY: inbd.DeviceBusy,
    errno.EINTR: inbd.Interrupted,
    errno.ENOENT: inbd.FileNotFound,
    errno.ELOOP: inbd.SymlinkRejected}





def translate_os_error(err, action, path):
  """
  Return the inbd.SafeIOError subclass instance corresponding to the errno of
  OSError err. Callers raise it 'from err' so that the cause is kept.
  """
  error_class = _ERRNO_TO_ERROR.get(err.errno, inbd.SafeIOError)
  return error_class(
      'error ' + action + ' ' + repr(path) + ': ' + (err.strerror or str(err)))





def check_no_binary_content(data):
  """Raise inbd.BinaryContent if data (bytes) holds C0 control characters."""
  # bytes.translate with a deletion table leaves only the offending bytes.
  offending = data.translate(None, delete=bytes(
      b for b in range(256) if b not in _BINARY_BYTES))
  if offending:
    raise inbd.BinaryContent(
        'content contains binary data (control byte ' +
        hex(offending[0]) + ')')





def check_json_structure(obj):
  """
  <Purpose>
    Check that a parsed JSON document is nested no deeper than MAX_JSON_DEPTH
    containers and holds no more than MAX_JSON_PROPERTIES object properties
    in total.

  <Exceptions>
    inbd.JsonNestingTooDeep
    inbd.JsonTooManyProperties
  """
  properties = 0
  stack = [(obj, 1)]

  while stack:
    value, depth = stack.pop()

    if isinstance(value, dict):
      children = value.values()
      properties += len(value)
      if properties > MAX_JSON_PROPERTIES:
        raise inbd.JsonTooManyProperties(
            'JSON has more than ' + str(MAX_JSON_PROPERTIES) + ' properties')
    elif isinstance(value, list):
      children = value
    else:
      continue

    if depth > MAX_JSON_DEPTH:
      raise inbd.JsonNestingTooDeep(
          'JSON nesting depth exceeds ' + str(MAX_JSON_DEPTH))

    for child in children:
      if isinstance(child, (dict, list)):
        stack.append((child, depth + 1))





def parse_json(data, source='<data>'):
  """
  Decode and parse JSON bytes, applying the binary-content and structure
  checks. Used for files read here and for documents extracted from archives.
  """
  check_no_binary_content(data)
  try:
    obj = json.loads(data.decode('utf-8'))
  except (UnicodeDecodeError, ValueError) as e:
    raise inbd.UnmarshalFailed(
        'failed to parse JSON from ' + source + ': ' + str(e)) from e
  check_json_structure(obj)
  return obj





class SafeIO(object):
  """
  <Purpose>
    Performs filesystem operations after validating their paths as described
    in the module docstring. Holds no state between calls apart from its
    list of allowed base directories.

  <Fields>

    self.allowed_base_dirs
      The directories under which files may be accessed.
  """

  def __init__(self, allowed_base_dirs=None):
    if allowed_base_dirs is None:
      allowed_base_dirs = ALLOWED_BASE_DIRS
    self.allowed_base_dirs = [
        os.path.normpath(base) for base in allowed_base_dirs]


  def check_path(self, path, directory=False):
    """
    <Purpose>
      Apply the path checks to path and return its normalized form, which is
      what callers should then operate on.

    <Arguments>
      path
        The path to check. Must be absolute.

      directory
        True for directory operations, which may act on an allowed base
        directory itself.

    <Exceptions>
      inbd.PathOutsideAllowedBase
        if the path is relative, outside every allowed base directory, names
        a base directory for a file operation, contains '..', or is too long

      inbd.SymlinkRejected
        if the path or an existing ancestor is not canonical
    """
    if not isinstance(path, str) or not path:
      raise inbd.PathOutsideAllowedBase('path must be a non-empty string')

    if not os.path.isabs(path):
      raise inbd.PathOutsideAllowedBase('path must be absolute: ' + repr(path))

    normalized = os.path.normpath(path)
    # normpath keeps a leading '//'
    if normalized.startswith('//'):
      normalized = '/' + normalized.lstrip('/')

    if not self._is_within_base(normalized, directory):
      raise inbd.PathOutsideAllowedBase(
          'access to the path is outside the allowed directories: ' +
          normalized)

    if '..' in path.split('/'):
      raise inbd.PathOutsideAllowedBase(
          'path contains a traversal sequence: ' + path)

    if len(path) > MAX_PATH_LENGTH:
      raise inbd.PathOutsideAllowedBase(
          'path is longer than ' + str(MAX_PATH_LENGTH) + ' characters')

    self._check_no_symlinks(normalized)

    return normalized


  def _is_within_base(self, path, directory):
    for base in self.allowed_base_dirs:
      if path == base:
        if directory:
          return True
      elif path.startswith(base.rstrip('/') + '/'):
        return True
    return False


  def _check_no_symlinks(self, path):
    if os.path.lexists(path):
      if os.path.realpath(path) != path:
        raise inbd.SymlinkRejected('path contains symlinks: ' + path)
      return

    # For a path that does not exist yet, every existing ancestor must be
    # canonical.
    ancestor = os.path.dirname(path)
    while ancestor not in ('/', ''):
      if os.path.lexists(ancestor) and os.path.realpath(ancestor) != ancestor:
        raise inbd.SymlinkRejected('path contains symlinks: ' + path)
      ancestor = os.path.dirname(ancestor)


  def _check_same_file(self, fileobj, expected, path):
    """
    Re-stat the open handle and make sure it is the file that was checked
    before opening, and that the path still leads to it.
    """
    opened = os.fstat(fileobj.fileno())
    try:
      current = os.lstat(path)
    except OSError as e:
      raise translate_os_error(e, 're-checking', path) from e

    identity = (opened.st_dev, opened.st_ino)
    if identity != (current.st_dev, current.st_ino) or (expected is not None
        and identity != (expected.st_dev, expected.st_ino)):
      raise inbd.SymlinkRejected(
          'file changed between check and open: ' + path)


  def _lstat(self, path, action):
    try:
      return os.lstat(path)
    except OSError as e:
      raise translate_os_error(e, action, path) from e





  def open(self, path, flags=os.O_RDONLY, perm=0o600):
    """
    <Purpose>
      Open path with os.open()-style flags after validating it, and return a
      binary file object. O_NOFOLLOW is always added. After opening, the
      handle is re-checked against the path (see _check_same_file).

    <Arguments>
      path    absolute path
      flags   os.O_* flags
      perm    permission bits for a newly created file

    <Exceptions>
      inbd.SafeIOError subclasses for validation and OS failures.

    <Returns>
      A file object in 'rb', 'wb', 'ab' or 'r+b' mode, matching flags.
    """
    path = self.check_path(path)

    expected = None
    if os.path.lexists(path):
      expected = self._lstat(path, 'checking')
      if not stat.S_ISREG(expected.st_mode):
        raise inbd.SafeIOError('not a regular file: ' + path)

    try:
      fd = os.open(path, flags | os.O_NOFOLLOW | os.O_CLOEXEC, perm)
    except OSError as e:
      raise translate_os_error(e, 'opening', path) from e

    access = flags & (os.O_RDONLY | os.O_WRONLY | os.O_RDWR)
    if access == os.O_RDWR:
      mode = 'r+b'
    elif access == os.O_WRONLY:
      mode = 'ab' if flags & os.O_APPEND else 'wb'
    else:
      mode = 'rb'

    fileobj = os.fdopen(fd, mode)
    try:
      self._check_same_file(fileobj, expected, path)
    except inbd.Error:
      fileobj.close()
      raise

    return fileobj





  def read(self, path):
    """
    <Purpose>
      Read a whole file, which must hold between MIN_FILE_SIZE and
      MAX_FILE_SIZE bytes (inclusive).

    <Exceptions>
      inbd.FileTooLarge, inbd.FileTooSmall, and the path and OS errors of
      open().

    <Returns>
      The file's contents, as bytes.
    """
    path = self.check_path(path)
    info = self._lstat(path, 'reading')

    if not stat.S_ISREG(info.st_mode):
      raise inbd.SafeIOError('not a regular file: ' + path)
    if info.st_size > MAX_FILE_SIZE:
      raise inbd.FileTooLarge(
          'file ' + path + ' is larger than ' + str(MAX_FILE_SIZE) + ' bytes')
    if info.st_size < MIN_FILE_SIZE:
      raise inbd.FileTooSmall(
          'file ' + path + ' is smaller than ' + str(MIN_FILE_SIZE) + ' bytes')

    with self.open(path) as fileobj:
      data = fileobj.read(MAX_FILE_SIZE + 1)

    # The file may have grown after the size check.
    if len(data) > MAX_FILE_SIZE:
      raise inbd.FileTooLarge(
          'file ' + path + ' is larger than ' + str(MAX_FILE_SIZE) + ' bytes')

    return data


  def read_text(self, path):
    """Like read(), but rejects binary content and returns a str."""
    data = self.read(path)
    check_no_binary_content(data)
    try:
      return data.decode('utf-8')
    except UnicodeDecodeError as e:
      raise inbd.BinaryContent(path + ' is not valid UTF-8 text') from e


  def read_json(self, path):
    """
    Read and parse a JSON file, rejecting binary content, nesting deeper than
    MAX_JSON_DEPTH and more than MAX_JSON_PROPERTIES properties. Raises
    inbd.UnmarshalFailed if the file is not JSON.
    """
    return parse_json(self.read(path), path)


  def read_kernel_file(self, path):
    """
    Read one of the allow-listed kernel-exported files (KERNEL_READ_ONLY_PATHS)
    and return its contents as bytes. These may be symlinks and are often
    reported with a size of 0 or 4096, so only the maximum size is enforced.
    """
    if path not in KERNEL_READ_ONLY_PATHS:
      raise inbd.PathOutsideAllowedBase(
          'access to the path is outside the allowed directories: ' +
          repr(path))
    try:
      with open(path, 'rb') as fileobj:
        data = fileobj.read(MAX_FILE_SIZE + 1)
    except OSError as e:
      raise translate_os_error(e, 'reading', path) from e

    if len(data) > MAX_FILE_SIZE:
      raise inbd.FileTooLarge('file ' + path + ' is too large')
    return data





  def write(self, path, data, perm=0o644):
    """Write data (bytes or str) to path, creating or truncating it."""
    if isinstance(data, str):
      data = data.encode('utf-8')

    with self.open(
        path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, perm) as fileobj:
      fileobj.write(data)


  def write_atomic(self, path, data, perm=0o644):
    """
    <Purpose>
      Replace path with data so that readers see either the old contents or
      the new contents, never a mixture: the data is written and synced to a
      temporary file in the same directory, which is then renamed over path.

    <Exceptions>
      inbd.SafeIOError subclasses. On failure the original file is untouched
      and the temporary file is removed.
    """
    if isinstance(data, str):
      data = data.encode('utf-8')

    path = self.check_path(path)
    if os.path.lexists(path) and not stat.S_ISREG(
        self._lstat(path, 'checking').st_mode):
      raise inbd.SafeIOError('not a regular file: ' + path)

    fileobj, temp_path = self.create_temp_file(
        os.path.dirname(path), prefix='.' + os.path.basename(path) + '.')
    try:
      with fileobj:
        fileobj.write(data)
        fileobj.flush()
        os.fsync(fileobj.fileno())
        os.fchmod(fileobj.fileno(), perm)
      os.replace(temp_path, path)

    except OSError as e:
      self._discard(temp_path)
      raise translate_os_error(e, 'writing', path) from e

    except BaseException:
      self._discard(temp_path)
      raise


  def _discard(self, temp_path):
    try:
      os.remove(temp_path)
    except FileNotFoundError:
      pass
    except OSError as e:
      log.warning('Unable to remove temporary file ' + repr(temp_path) +
          ': ' + str(e))


  def create_temp_file(self, directory, prefix='tmp', suffix=''):
    """
    Create a new, empty file in directory (which must pass the directory
    checks), readable and writable only by the owner. Returns a tuple
    (binary file object open for writing, path).
    """
    directory = self.check_path(directory, directory=True)
    try:
      fd, temp_path = tempfile.mkstemp(
          suffix=suffix, prefix=prefix, dir=directory)
    except OSError as e:
      raise translate_os_error(e, 'creating a temporary file in', directory) \
          from e

    fileobj = os.fdopen(fd, 'wb')
    try:
      self.check_path(temp_path)
      self._check_same_file(fileobj, None, temp_path)
    except inbd.Error:
      fileobj.close()
      self._discard(temp_path)
      raise

    return fileobj, temp_path





  def mkdir_all(self, path, perm=0o755):
    """
    Create directory path and any missing parents. The allowed base
    directories themselves are acceptable here.
    """
    path = self.check_path(path, directory=True)
    try:
      os.makedirs(path, perm, exist_ok=True)
    except OSError as e:
      raise translate_os_error(e, 'creating directory', path) from e

    # Created (or found) by a racing process as something else?
    info = self._lstat(path, 'checking')
    if not stat.S_ISDIR(info.st_mode):
      raise inbd.SafeIOError('not a directory: ' + path)


  def copy(self, source, destination, perm=None):
    """
    Copy the regular file source to destination, creating or truncating it.
    The new file gets perm, or source's permission bits if perm is None.
    """
    with self.open(source) as source_file:
      if perm is None:
        perm = stat.S_IMODE(os.fstat(source_file.fileno()).st_mode)
      with self.open(destination,
          os.O_WRONLY | os.O_CREAT | os.O_TRUNC, perm) as destination_file:
        try:
          shutil.copyfileobj(source_file, destination_file)
        except OSError as e:
          raise translate_os_error(e, 'copying to', destination) from e


  def remove(self, path):
    """Remove the file at path. Raises inbd.FileNotFound if it is absent."""
    path = self.check_path(path)
    try:
      os.remove(path)
    except OSError as e:
      raise translate_os_error(e, 'removing', path) from e


  def exists(self, path):
    """
    Return True if path exists. Unlike the other operations this accepts an
    allowed base directory itself. A path that fails the checks raises, since
    asking about such a path is a programming error.
    """
    return os.path.exists(self.check_path(path, directory=True))
