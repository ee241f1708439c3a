"""
<Program Name>
  common.py

<Purpose>
  Small utilities shared by the inbd services: argument validation (URLs,
  hash algorithms, GUIDs), parsing of 'path:value' pair lists, the
  cancellation token threaded through each request, the process-wide lock
  serializing privileged operations, and detection of the host distribution.
"""
import inbd
import inbd.formats
import inbd.safe_io

import contextlib
import threading
import time
import urllib.parse

log = inbd.logging.getLogger('inbd.common')
log.setLevel(inbd.logging.DEBUG)

DEFAULT_HASH_ALGORITHM = 'sha384'

# Words accepted as booleans in 'path:value' pairs, after integers are tried.
_TRUE_WORDS = ['1', 't', 'T', 'TRUE', 'true', 'True']
_FALSE_WORDS = ['0', 'f', 'F', 'FALSE', 'false', 'False']





def validate_url(url):
  """
  <Purpose>
    Check that url is an absolute URI whose scheme is exactly 'https'
    (lowercase) and which names a host.

  <Exceptions>
    inbd.InvalidURL
  """
  if not isinstance(url, str) or not url.strip():
    raise inbd.InvalidURL('URL is required')

  try:
    parsed = urllib.parse.urlsplit(url)
    # Accessing the port validates it.
    parsed.port
  except ValueError as e:
    raise inbd.InvalidURL('invalid URL ' + repr(url) + ': ' + str(e)) from e

  # urlsplit lowercases the scheme; compare it as written.
  if parsed.scheme != 'https' or not url.startswith('https:'):
    raise inbd.InvalidURL(
        'invalid URL ' + repr(url) + ': scheme must be https')

  if not parsed.hostname:
    raise inbd.InvalidURL('invalid URL ' + repr(url) + ': host is required')

  return url





def normalize_hash_algorithm(hash_algorithm):
  """
  Return the lowercase name of the requested hash algorithm, or the default
  (sha384) for an empty or missing value. Raises inbd.InvalidHashAlgorithm
  for anything other than sha256, sha384 or sha512 in any case.
  """
  if hash_algorithm is None or hash_algorithm == '':
    return DEFAULT_HASH_ALGORITHM

  normalized = str(hash_algorithm).lower()
  if normalized not in inbd.formats.HASH_ALGORITHM_NAMES:
    raise inbd.InvalidHashAlgorithm(
        'invalid hash algorithm: ' + repr(hash_algorithm) +
        " (must be 'sha256', 'sha384', or 'sha512')")

  return normalized





def is_valid_guid(guid):
  return inbd.formats.GUID_SCHEMA.matches(guid)





def validate_guid(guid):
  """Raise inbd.InvalidGUID unless guid is in the 8-4-4-4-12 hex form."""
  if not is_valid_guid(guid):
    raise inbd.InvalidGUID('invalid GUID ' + repr(guid) +
        ': expected the 8-4-4-4-12 hexadecimal form')
  return guid





def coerce_value(text):
  """
  Convert the value half of a 'path:value' pair: an integer if it parses as
  one, else a boolean if it is a boolean word, else the string unchanged.
  """
  try:
    return int(text)
  except ValueError:
    pass

  if text in _TRUE_WORDS:
    return True
  if text in _FALSE_WORDS:
    return False

  return text





def split_paths(text):
  """Split a ';'-separated list of config paths, trimming each one."""
  return [path.strip() for path in text.split(';')]





def split_pairs(text):
  """
  <Purpose>
    Parse a ';'-separated list of 'path:value' pairs. Each pair is split on
    its first ':' only, so values may themselves contain ':' (URLs, for
    instance). Empty segments are skipped. Values are returned as given; see
    coerce_value().

  <Exceptions>
    inbd.PathRequired
      if the list holds no pairs, or a pair has an empty path.

    inbd.InvalidRequest
      if a segment has no ':'.

  <Returns>
    A list of (path, value) tuples, in order.
  """
  if text is None or not text.strip():
    raise inbd.PathRequired('path is required')

  pairs = []
  for segment in text.split(';'):
    segment = segment.strip()
    if not segment:
      continue

    if ':' not in segment:
      raise inbd.InvalidRequest(
          'invalid format, expected key:value: ' + repr(segment))

    path, value = segment.split(':', 1)
    path = path.strip()
    if not path:
      raise inbd.PathRequired('path is required in ' + repr(segment))

    pairs.append((path, value))

  if not pairs:
    raise inbd.PathRequired('path is required')

  return pairs





class CancelToken(object):
  """
  <Purpose>
    Request-scoped cancellation. Handlers receive one of these and check it
    between steps. It becomes cancelled when cancel() is called (when the
    server shuts down, for instance) or when its deadline passes.

    Running subprocesses are never interrupted because of a token; work that
    follows them (cleanup, reboot) is what gets skipped.

  <Fields>

    self.deadline
      time.monotonic() value after which the token counts as cancelled, or
      None for no deadline.
  """

  def __init__(self, timeout=None, parent=None):
    self._event = threading.Event()
    self._parent = parent
    if timeout is None:
      self.deadline = None
    else:
      self.deadline = time.monotonic() + timeout


  def cancel(self):
    self._event.set()


  def cancelled(self):
    if self._event.is_set():
      return True
    if self._parent is not None and self._parent.cancelled():
      return True
    return self.deadline is not None and time.monotonic() >= self.deadline


  def remaining(self):
    """Seconds until the deadline (never negative), or None without one."""
    if self.deadline is None:
      return None
    return max(0.0, self.deadline - time.monotonic())


  def child(self, timeout=None):
    """A token cancelled with this one, optionally with a shorter deadline."""
    return CancelToken(timeout=timeout, parent=self)


  def __repr__(self):
    return 'CancelToken(cancelled=' + repr(self.cancelled()) + ')'





# Held for the whole of a firmware or OS update pipeline.
PRIVILEGED_OPERATION_LOCK = threading.Lock()


@contextlib.contextmanager
def privileged_operation(lock=PRIVILEGED_OPERATION_LOCK):
  """
  Context manager holding lock for its duration. The lock is not waited for:
  if another privileged operation holds it, inbd.UpdateInProgress is raised
  immediately.
  """
  if not lock.acquire(blocking=False):
    raise inbd.UpdateInProgress(
        'another update is in progress; try again when it has finished')
  try:
    yield
  finally:
    lock.release()





def parse_os_release(text):
  """Parse os-release KEY=value lines into a dictionary, unquoting values."""
  fields = {}
  for line in text.splitlines():
    line = line.strip()
    if not line or line.startswith('#') or '=' not in line:
      continue
    key, value = line.split('=', 1)
    fields[key.strip()] = value.strip().strip('"').strip("'")
  return fields





def detect_os(fileio, os_release_path=inbd.OS_RELEASE_PATH):
  """
  <Purpose>
    Identify the host distribution from os-release.

  <Arguments>
    fileio
      A safe_io.SafeIO object through which the file is read.

  <Exceptions>
    inbd.SafeIOError subclasses if os-release cannot be read.

  <Returns>
    'Ubuntu' for Ubuntu, 'EMT' for Edge Microvisor Toolkit, and otherwise the
    distribution's NAME (or ID) as it appears in the file.
  """
  if os_release_path in inbd.safe_io.KERNEL_READ_ONLY_PATHS:
    text = fileio.read_kernel_file(os_release_path).decode('utf-8', 'replace')
  else:
    text = fileio.read_text(os_release_path)

  fields = parse_os_release(text)

  distribution_id = fields.get('ID', '').lower()
  name = fields.get('NAME', '')

  if distribution_id == 'ubuntu' or 'Ubuntu' in name:
    return 'Ubuntu'
  if 'microvisor' in name.lower() or distribution_id == 'emt':
    return 'EMT'

  return name or distribution_id or 'Unknown'
