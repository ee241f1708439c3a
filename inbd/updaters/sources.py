"""
<Program Name>
  sources.py

<Purpose>
  Edits the APT package sources of an Ubuntu host:

    update_os_source()            rewrite /etc/apt/sources.list (after
                                  backing it up to sources.list.bak)
    add_application_source()      write /etc/apt/sources.list.d/<filename>,
                                  optionally installing a GPG keyring
    remove_application_source()   delete both again

  Files are written through the safe I/O layer; gpg runs through the
  allow-listed executor.
"""
import inbd
import inbd.common
import inbd.executor

import os
import uuid

log = inbd.logging.getLogger('inbd.sources')
log.setLevel(inbd.logging.DEBUG)

# GPG keys are downloaded here before being dearmored into the keyrings
# directory.
GPG_KEY_DOWNLOAD_DIR = '/tmp'





def check_file_name(name, what):
  """
  Raise inbd.InvalidRequest unless name is a plain file name: non-empty, no
  directory separators, and not '.' or '..'.
  """
  if not name or not name.strip():
    raise inbd.InvalidRequest(what + ' is required')
  if '/' in name or name in ('.', '..') or '\x00' in name:
    raise inbd.InvalidRequest('invalid ' + what + ': ' + repr(name))



def render_source_lines(sources):
  """
  Join source lines, each followed by a newline. Raises inbd.InvalidRequest
  if a line itself contains a line break.
  """
  for line in sources:
    if '\n' in line or '\r' in line:
      raise inbd.InvalidRequest(
          'source lines may not contain line breaks: ' + repr(line))
  return ''.join([line + '\n' for line in sources])





class SourcesManager(object):
  """
  <Purpose>
    APT source list and keyring management.

  <Fields>

    self.fileio
      safe_io.SafeIO for every file access.

    self.executor
      executor.Executor, for gpg.

    self.downloader
      downloader.Downloader, for GPG keys.

    self.sources_list_path, self.sources_list_dir, self.keyrings_dir
      Locations of sources.list, of the application source files, and of the
      keyrings.
  """

  def __init__(self, fileio, executor, downloader,
      sources_list_path=inbd.SOURCES_LIST_PATH,
      sources_list_dir=inbd.SOURCES_LIST_DIR,
      keyrings_dir=inbd.KEYRINGS_DIR,
      gpg_key_download_dir=GPG_KEY_DOWNLOAD_DIR):

    self.fileio = fileio
    self.executor = executor
    self.downloader = downloader
    self.sources_list_path = sources_list_path
    self.sources_list_dir = sources_list_dir
    self.keyrings_dir = keyrings_dir
    self.gpg_key_download_dir = gpg_key_download_dir


  def update_os_source(self, sources):
    """
    <Purpose>
      Replace the contents of sources.list with sources, one line each.
      The current file is first copied to sources.list.bak.

    <Exceptions>
      inbd.EmptySourceList
        if sources is empty.

      inbd.Error with message 'failed to backup sources list: ...'
        if the backup cannot be made; sources.list is then not touched.

      inbd.SafeIOError subclasses if the new list cannot be written.
    """
    if not sources:
      raise inbd.EmptySourceList('source list is empty')

    contents = render_source_lines(sources)

    backup_path = self.sources_list_path + '.bak'
    try:
      self.fileio.copy(self.sources_list_path, backup_path)
    except inbd.SafeIOError as e:
      raise inbd.Error('failed to backup sources list: ' + str(e)) from e
    log.info('Backed up ' + self.sources_list_path + ' to ' + backup_path)

    self.fileio.write_atomic(self.sources_list_path, contents, perm=0o644)
    log.info('Wrote ' + str(len(sources)) + ' lines to ' +
        self.sources_list_path)


  def add_application_source(self, filename, sources, gpg_key_uri='',
      gpg_key_name='', token=None):
    """
    <Purpose>
      Write sources to <sources_list_dir>/<filename>. If both gpg_key_uri and
      gpg_key_name are given, the key is first downloaded (from a trusted
      repository only) and dearmored to <keyrings_dir>/<gpg_key_name>.

    <Exceptions>
      inbd.InvalidRequest for bad file names or source lines,
      inbd.InvalidURL, inbd.UntrustedRepository, download errors,
      inbd.CommandError subclasses if gpg fails, and safe I/O errors.
    """
    check_file_name(filename, 'filename')
    contents = render_source_lines(sources or [])

    if gpg_key_uri and gpg_key_name:
      check_file_name(gpg_key_name, 'gpg_key_name')
      inbd.common.validate_url(gpg_key_uri)
      self.install_gpg_key(gpg_key_uri, gpg_key_name, token)
    elif gpg_key_uri or gpg_key_name:
      log.warning('Both gpg_key_uri and gpg_key_name are needed to install '
          'a GPG key; skipping key installation')

    source_path = os.path.join(self.sources_list_dir, filename)
    self.fileio.mkdir_all(self.sources_list_dir)
    self.fileio.write(source_path, contents, perm=0o644)
    log.info('Application source written to ' + source_path)


  def install_gpg_key(self, gpg_key_uri, gpg_key_name, token=None):
    key_download_name = 'gpgkey-' + uuid.uuid4().hex + '.asc'
    key_download_path = self.downloader.download(gpg_key_uri,
        destination_dir=self.gpg_key_download_dir,
        filename=key_download_name, token=token)

    keyring_path = os.path.join(self.keyrings_dir, gpg_key_name)
    try:
      self.fileio.check_path(keyring_path)
      self.fileio.mkdir_all(self.keyrings_dir)
      self.executor.execute([inbd.executor.GPG_COMMAND, '--dearmor',
          '--output', keyring_path, key_download_path])
    finally:
      try:
        self.fileio.remove(key_download_path)
      except inbd.SafeIOError as e:
        log.warning('Failed to remove downloaded GPG key ' +
            key_download_path + ': ' + str(e))

    log.info('GPG key added to ' + keyring_path)


  def remove_application_source(self, filename, gpg_key_name=''):
    """
    <Purpose>
      Delete <keyrings_dir>/<gpg_key_name> (if a name is given; a missing
      keyring only draws a warning) and <sources_list_dir>/<filename>.

    <Exceptions>
      inbd.InvalidRequest for bad file names.
      inbd.FileNotFound if the source file does not exist.
      inbd.SafeIOError subclasses if a removal fails.
    """
    check_file_name(filename, 'filename')

    if gpg_key_name:
      check_file_name(gpg_key_name, 'gpg_key_name')
      keyring_path = os.path.join(self.keyrings_dir, gpg_key_name)
      if self.fileio.exists(keyring_path):
        self.fileio.remove(keyring_path)
        log.info('GPG key removed: ' + keyring_path)
      else:
        log.warning('GPG key does not exist: ' + keyring_path)

    source_path = os.path.join(self.sources_list_dir, filename)
    if not self.fileio.exists(source_path):
      raise inbd.FileNotFound('source file does not exist: ' + source_path)

    self.fileio.remove(source_path)
    log.info('Source file removed: ' + source_path)
