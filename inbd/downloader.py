"""
<Program Name>
  downloader.py

<Purpose>
  Fetches firmware packages, configuration documents and GPG keys over HTTPS
  into the daemon's download cache.

  A URL is only fetched if it starts with one of the trusted repositories in
  the configuration document (os_updater.trustedRepositories). The body is
  streamed to disk through the safe I/O layer and may not exceed the free
  space of the destination directory. The HTTP work itself is done by the
  TUF client's urllib3 fetcher.
"""
import inbd
import inbd.common

import os
import urllib.parse
import posixpath

import tuf.api.exceptions
from tuf.ngclient import Urllib3Fetcher

log = inbd.logging.getLogger('inbd.downloader')
log.setLevel(inbd.logging.DEBUG)

DOWNLOAD_SOCKET_TIMEOUT_SECONDS = 30





def free_disk_space(path):
  """Return the number of bytes available to unprivileged users at path."""
  try:
    stats = os.statvfs(path)
  except OSError as e:
    raise inbd.DownloadFailed(
        'failed to get filesystem stats for ' + path + ': ' + str(e)) from e
  return stats.f_bavail * stats.f_frsize





def filename_from_url(url):
  """
  Return the last component of url's path. Raises inbd.InvalidURL if there
  is none (for instance 'https://host/' or 'https://host/dir/').
  """
  name = posixpath.basename(urllib.parse.urlsplit(url).path)
  if name in ('', '.', '..'):
    raise inbd.InvalidURL('could not extract file name from URL: ' + url)
  return name





def is_trusted(url, trusted_repositories):
  for repository in trusted_repositories:
    if repository and url.startswith(repository):
      return True
  return False





class Downloader(object):
  """
  <Purpose>
    Downloads a URL into a directory.

  <Fields>

    self.fileio
      safe_io.SafeIO through which the destination file is written.

    self.trusted_repositories
      A callable returning the list of trusted repository URL prefixes
      (ConfigStore.trusted_repositories in the daemon), or None to allow any
      https URL. The list is read for every download, so edits made with
      AppendConfig apply at once.

    self.download_dir
      Default destination directory.

    self.fetcher
      An object with a fetch(url) method returning an iterator of bytes, in
      the manner of tuf.ngclient.Urllib3Fetcher.

    self.free_space
      Callable(path) -> free bytes; free_disk_space unless replaced by tests.
  """

  def __init__(self, fileio, trusted_repositories=None,
      download_dir=inbd.DOWNLOAD_DIR, fetcher=None,
      free_space=free_disk_space):

    self.fileio = fileio
    self.trusted_repositories = trusted_repositories
    self.download_dir = download_dir
    if fetcher is None:
      fetcher = Urllib3Fetcher(socket_timeout=DOWNLOAD_SOCKET_TIMEOUT_SECONDS)
    self.fetcher = fetcher
    self.free_space = free_space


  def check_trusted(self, url):
    """Raise inbd.UntrustedRepository unless url is in a trusted repository."""
    if self.trusted_repositories is None:
      return
    if not is_trusted(url, self.trusted_repositories()):
      raise inbd.UntrustedRepository(
          'URL is not from a trusted repository: ' + url +
          '. Add the repository to os_updater.trustedRepositories first.')


  def download(self, url, destination_dir=None, filename=None, token=None):
    """
    <Purpose>
      Fetch url into destination_dir (the download cache by default) under
      filename (the last component of the URL path by default).

    <Arguments>
      url
        An https URL in a trusted repository.

      token
        common.CancelToken. If it is cancelled while the body is being
        received, the download is abandoned.

    <Exceptions>
      inbd.InvalidURL, inbd.UntrustedRepository
        before anything is fetched.

      inbd.InsufficientDiskSpace
        if the body is larger than the free space of destination_dir.

      inbd.DownloadFailed
        on HTTP errors (non-2xx status), network errors, or cancellation.

      inbd.SafeIOError subclasses from writing the file.

      In every failure case a partially written file is removed.

    <Side Effects>
      Creates destination_dir if it does not exist.

    <Returns>
      The path of the downloaded file.
    """
    inbd.common.validate_url(url)
    self.check_trusted(url)

    if destination_dir is None:
      destination_dir = self.download_dir
    if filename is None:
      filename = filename_from_url(url)

    self.fileio.mkdir_all(destination_dir)
    destination = os.path.join(destination_dir, filename)

    available = self.free_space(destination_dir)
    log.info('Downloading ' + url + ' to ' + destination + ' (' +
        str(available) + ' bytes free)')

    received = 0
    fileobj, temp_path = self.fileio.create_temp_file(
        destination_dir, prefix='.' + filename + '.')
    try:
      with fileobj:
        for chunk in self.fetcher.fetch(url):
          if token is not None and token.cancelled():
            raise inbd.DownloadFailed('download of ' + url + ' was cancelled')
          received += len(chunk)
          if received > available:
            raise inbd.InsufficientDiskSpace(
                'insufficient disk space to download ' + url + ': ' +
                str(available) + ' bytes available')
          fileobj.write(chunk)
      self.fileio.check_path(destination)
      os.replace(temp_path, destination)

    except tuf.api.exceptions.DownloadHTTPError as e:
      self._discard(temp_path)
      raise inbd.DownloadFailed(
          'download of ' + url + ' failed with status code ' +
          str(e.status_code) + '. Expected 200/Success.') from e

    except tuf.api.exceptions.DownloadError as e:
      self._discard(temp_path)
      raise inbd.DownloadFailed(
          'download of ' + url + ' failed: ' + str(e)) from e

    except OSError as e:
      self._discard(temp_path)
      raise inbd.DownloadFailed(
          'error writing ' + destination + ': ' + str(e)) from e

    except BaseException:
      self._discard(temp_path)
      raise

    log.info('Downloaded ' + str(received) + ' bytes to ' + destination)
    return destination


  def _discard(self, path):
    try:
      if self.fileio.exists(path):
        self.fileio.remove(path)
    except inbd.SafeIOError as e:
      log.warning('Failed to remove partial download ' + path + ': ' + str(e))
