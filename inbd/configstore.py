"""
<Program Name>
  configstore.py

<Purpose>
  Owns the daemon's JSON configuration document (by default
  /etc/intel_manageability.conf) and the JSON Schema governing it.

  Provides the five configuration operations exposed over RPC:

    load(uri, signature, hash_algorithm)    replace the whole document
    get(paths)                              read values
    set(pairs)                              assign values
    append(pairs) / remove(pairs)           edit list values

  Paths are dotted ('os_updater.trustedRepositories'); several paths or
  'path:value' pairs are separated by ';'.

  Every change is made to a deep copy of the document, the whole copy is
  validated against the schema, and only then is the file replaced
  atomically. If anything fails, the file on disk is left exactly as it was.
  Mutations are serialized by an exclusive lock; reads share the lock.
"""
import inbd
import inbd.formats
import inbd.common
import inbd.safe_io
import inbd.sig

import os
import copy
import json
import tarfile
import threading
import urllib.parse

import canonicaljson

log = inbd.logging.getLogger('inbd.configstore')
log.setLevel(inbd.logging.DEBUG)

TRUSTED_REPOSITORIES_PATH = 'os_updater.trustedRepositories'





class ReadWriteLock(object):
  """
  Many readers or one writer. Writers are preferred: once a writer is
  waiting, new readers wait behind it.
  """

  def __init__(self):
    self._condition = threading.Condition(threading.Lock())
    self._readers = 0
    self._writer = False
    self._writers_waiting = 0


  def acquire_read(self):
    with self._condition:
      while self._writer or self._writers_waiting:
        self._condition.wait()
      self._readers += 1


  def release_read(self):
    with self._condition:
      self._readers -= 1
      if not self._readers:
        self._condition.notify_all()


  def acquire_write(self):
    with self._condition:
      self._writers_waiting += 1
      while self._writer or self._readers:
        self._condition.wait()
      self._writers_waiting -= 1
      self._writer = True


  def release_write(self):
    with self._condition:
      self._writer = False
      self._condition.notify_all()


  def reading(self):
    return _Held(self.acquire_read, self.release_read)


  def writing(self):
    return _Held(self.acquire_write, self.release_write)



class _Held(object):
  def __init__(self, acquire, release):
    self._acquire = acquire
    self._release = release

  def __enter__(self):
    self._acquire()
    return self

  def __exit__(self, *exc_info):
    self._release()
    return False





def format_value(value):
  """
  Render a configuration value for get(): strings as they are, booleans as
  'true'/'false', null as 'null', numbers in decimal, and lists and objects
  as compact JSON.
  """
  if isinstance(value, str):
    return value
  if isinstance(value, bool):
    return 'true' if value else 'false'
  if value is None:
    return 'null'
  if isinstance(value, (int, float)):
    return str(value)
  return json.dumps(value, separators=(',', ':'))





def get_path(document, path):
  """
  Return the value at dotted path in document. Raises KeyError with a
  readable message if any component is missing or not an object.
  """
  current = document
  for part in path.split('.'):
    if not isinstance(current, dict):
      raise KeyError('invalid path: ' + path)
    if part not in current:
      raise KeyError('path not found: ' + path)
    current = current[part]
  return current


def set_path(document, path, value):
  """
  Assign value at dotted path in document, creating missing intermediate
  objects. Raises inbd.ConfigValidationFailed if an intermediate value exists
  but is not an object.
  """
  parts = path.split('.')
  current = document
  for part in parts[:-1]:
    if part not in current:
      current[part] = {}
    current = current[part]
    if not isinstance(current, dict):
      raise inbd.ConfigValidationFailed('invalid path: ' + path)
  current[parts[-1]] = value





def documents_equal(first, second):
  try:
    return canonicaljson.encode_canonical_json(first) == \
        canonicaljson.encode_canonical_json(second)
  except (TypeError, ValueError):
    # Values canonicaljson refuses (e.g. non-integral floats).
    return first == second





class ConfigStore(object):
  """
  <Purpose>
    The single holder of the configuration document for the process. It is
    created once at startup and passed to whatever needs configuration.

  <Fields>

    self.fileio
      safe_io.SafeIO for every file access.

    self.verifier
      sig.SignatureVerifier used by load().

    self.downloader
      downloader.Downloader used by load() for https URIs, or None, in which
      case only local paths can be loaded.

    self.config_path
      Path of the configuration document.

    self.schema_path
      Path of the JSON Schema file. If it does not exist, the schema bundled
      in inbd.formats.CONFIG_SCHEMA is used.

    self.appendable_paths
      Paths whose list values append() and remove() may edit.

    self.lock
      ReadWriteLock: exclusive for load/set/append/remove, shared for get.
  """

  def __init__(self, fileio, verifier=None, downloader=None,
      config_path=inbd.CONFIG_FILE_PATH, schema_path=inbd.CONFIG_SCHEMA_PATH,
      appendable_paths=inbd.formats.APPENDABLE_CONFIG_PATHS, schema=None):

    self.fileio = fileio
    self.verifier = verifier
    self.downloader = downloader
    self.config_path = config_path
    self.schema_path = schema_path
    self.appendable_paths = list(appendable_paths)
    self._schema = schema
    self.lock = ReadWriteLock()


  def schema(self):
    """Return the formats.Schema to validate the document against."""
    if self._schema is not None:
      return self._schema
    if self.schema_path and self.fileio.exists(self.schema_path):
      return inbd.formats.Schema(
          self.fileio.read_json(self.schema_path), self.schema_path)
    return inbd.formats.CONFIG_SCHEMA


  def _read_document(self):
    document = self.fileio.read_json(self.config_path)
    if not isinstance(document, dict):
      raise inbd.UnmarshalFailed(
          'configuration document ' + self.config_path + ' is not an object')
    return document


  def _validate(self, document, schema=None):
    if schema is None:
      schema = self.schema()
    try:
      schema.check_match(document)
    except inbd.FormatError as e:
      raise inbd.ConfigValidationFailed(
          'config validation failed: ' + str(e)) from e


  def _write_document(self, document):
    data = json.dumps(document, indent=2) + '\n'
    self.fileio.write_atomic(self.config_path, data, perm=0o644)


  def validate(self):
    """
    Check the document on disk against the schema. Used at daemon startup.
    Raises inbd.ConfigValidationFailed or a safe I/O error.
    """
    with self.lock.reading():
      self._validate(self._read_document())


  def document(self):
    """Return a deep copy of the current document."""
    with self.lock.reading():
      return copy.deepcopy(self._read_document())


  def get_value(self, path, default=None):
    """Return the value at path, or default if it is absent."""
    with self.lock.reading():
      try:
        return copy.deepcopy(get_path(self._read_document(), path))
      except KeyError:
        return default


  def trusted_repositories(self):
    repositories = self.get_value(TRUSTED_REPOSITORIES_PATH, [])
    if not isinstance(repositories, list):
      return []
    return repositories





  def get(self, paths):
    """
    <Purpose>
      Look up one or more ';'-separated paths.

    <Exceptions>
      inbd.PathRequired if paths is empty or only whitespace.
      Safe I/O errors and inbd.UnmarshalFailed if the document cannot be read.

    <Returns>
      (values, errors): values is the ';'-joined string of the values, with
      an empty segment for each missing path; errors is a '; '-joined
      description of the missing paths, or '' if there were none.
    """
    if paths is None or not paths.strip():
      raise inbd.PathRequired('path is required')

    with self.lock.reading():
      document = self._read_document()

    values = []
    errors = []
    for path in inbd.common.split_paths(paths):
      if not path:
        values.append('')
        continue
      try:
        values.append(format_value(get_path(document, path)))
      except KeyError as e:
        errors.append(path + ': ' + e.args[0])
        values.append('')

    return ';'.join(values), '; '.join(errors)





  def _mutate(self, pairs, apply_pair):
    """
    Shared transaction for set/append/remove: parse pairs, apply each to a
    deep copy of the document, validate the copy, and write it if it changed.
    """
    parsed = inbd.common.split_pairs(pairs)

    with self.lock.writing():
      original = self._read_document()
      updated = copy.deepcopy(original)

      for path, value in parsed:
        apply_pair(updated, path, value)

      self._validate(updated)

      if documents_equal(original, updated):
        log.debug('Configuration unchanged; not rewriting ' + self.config_path)
        return

      self._write_document(updated)
      log.info('Configuration updated: ' + self.config_path)


  def set(self, pairs):
    """
    <Purpose>
      Assign each 'path:value' pair. Values are converted to integers or
      booleans where they parse as such (see common.coerce_value).

    <Exceptions>
      inbd.PathRequired, inbd.InvalidRequest
        for malformed pairs.

      inbd.ConfigValidationFailed
        if the resulting document does not match the schema. Nothing is
        written.
    """
    def apply_pair(document, path, value):
      set_path(document, path, inbd.common.coerce_value(value))

    self._mutate(pairs, apply_pair)


  def _list_at(self, document, path):
    try:
      current = get_path(document, path)
    except KeyError:
      return []
    if not isinstance(current, list):
      raise inbd.ConfigValidationFailed('target is not a list: ' + path)
    return current


  def append(self, pairs):
    """
    Add each value to the list at its path, unless it is already there.
    Only self.appendable_paths may be used (inbd.AppendNotSupported
    otherwise). A missing list is created.
    """
    def apply_pair(document, path, value):
      if path not in self.appendable_paths:
        raise inbd.AppendNotSupported(
            'append not supported for this path: ' + path)
      items = self._list_at(document, path)
      if value not in items:
        set_path(document, path, items + [value])

    self._mutate(pairs, apply_pair)


  def remove(self, pairs):
    """
    Remove each value from the list at its path. Values that are not present,
    and lists that do not exist, are ignored. Only self.appendable_paths may
    be used (inbd.RemoveNotSupported otherwise).
    """
    def apply_pair(document, path, value):
      if path not in self.appendable_paths:
        raise inbd.RemoveNotSupported(
            'remove not supported for this path: ' + path)
      items = self._list_at(document, path)
      if value in items:
        set_path(document, path, [item for item in items if item != value])

    self._mutate(pairs, apply_pair)





  def load(self, uri, signature='', hash_algorithm='', token=None):
    """
    <Purpose>
      Replace the whole configuration document with the one at uri.

      uri is either an absolute local path or an https URL (downloaded to the
      download directory first and removed afterwards). A '.tar' package
      must contain the configuration file under its usual name. The package
      or file is checked with the signature verifier, parsed, and validated
      against the schema before the document on disk is replaced. A document
      equal to the current one is not rewritten.

    <Exceptions>
      inbd.InvalidRequest, inbd.InvalidHashAlgorithm, inbd.InvalidURL,
      signature errors, inbd.InvalidPackage, inbd.UnmarshalFailed,
      inbd.ConfigValidationFailed, download and safe I/O errors.
    """
    if uri is None or not uri.strip():
      raise inbd.InvalidRequest('uri is required')

    hash_algorithm = inbd.common.normalize_hash_algorithm(hash_algorithm)

    downloaded = None
    if urllib.parse.urlsplit(uri).scheme:
      if self.downloader is None:
        raise inbd.InvalidRequest('cannot download configuration: ' + uri)
      downloaded = self.downloader.download(uri, token=token)
      local_path = downloaded
    else:
      local_path = uri

    try:
      with self.lock.writing():
        if self.verifier is not None:
          self.verifier.verify(signature, local_path, hash_algorithm, token)

        if inbd.sig.file_extension(local_path) == 'tar':
          data = self._read_config_from_tar(local_path)
        else:
          data = self.fileio.read(local_path)

        document = inbd.safe_io.parse_json(data, uri)
        self._validate(document)

        try:
          current = self._read_document()
        except inbd.Error as e:
          log.info('Current configuration unreadable (' + str(e) +
              '); replacing it')
          current = None

        if current is not None and documents_equal(current, document):
          log.info('Loaded configuration equals the current one; no change')
          return

        self.fileio.write_atomic(self.config_path, data, perm=0o644)
        log.info('Configuration loaded from ' + uri)

    finally:
      if downloaded is not None:
        try:
          self.fileio.remove(downloaded)
        except inbd.SafeIOError as e:
          log.warning('Failed to remove downloaded configuration ' +
              downloaded + ': ' + str(e))


  def _read_config_from_tar(self, tar_path):
    with self.fileio.open(tar_path) as fileobj:
      try:
        with tarfile.open(fileobj=fileobj, mode='r:') as archive:
          for member in archive:
            if os.path.basename(member.name) != inbd.CONFIG_FILE_NAME:
              continue
            if not member.isreg():
              raise inbd.InvalidPackage(
                  member.name + ' in ' + tar_path + ' is not a regular file')
            if member.size > inbd.safe_io.MAX_FILE_SIZE:
              raise inbd.FileTooLarge(
                  member.name + ' in ' + tar_path + ' is too large')
            return archive.extractfile(member).read()
      except tarfile.TarError as e:
        raise inbd.InvalidPackage(
            'failed to read tar file ' + tar_path + ': ' + str(e)) from e

    raise inbd.InvalidPackage(
        inbd.CONFIG_FILE_NAME + ' not found in tar archive ' + tar_path)
