"""
<Program Name>
  sig.py

<Purpose>
  Verification of package signatures.

  A package is signed by hashing it (sha384 unless the request says
  otherwise), taking the lowercase hexadecimal string of the digest, and
  signing the bytes of that string with RSA-PSS. The signature travels as a
  hexadecimal string.

  The verifying certificate is either the first certificate embedded in a tar
  package or, failing that, the certificate installed on the host at
  inbd.OTA_PACKAGE_CERT_PATH. With no certificate available and no signature
  given, verification is skipped with a warning; once a certificate is
  available a signature is required.

  Signatures are checked with the requested hash first and then with the
  other supported hashes (sha384, sha256, sha512, in that order), since
  older signing tools did not always use the hash they were asked for. A
  success with a hash other than the requested one is logged.
"""
import inbd
import inbd.common

import os
import binascii
import hashlib
import tarfile
import concurrent.futures

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

log = inbd.logging.getLogger('inbd.sig')
log.setLevel(inbd.logging.DEBUG)


MIN_KEY_SIZE_BITS = 2048
VERIFICATION_TIMEOUT_SECONDS = 30

# Order in which hashes are tried after the requested one.
FALLBACK_HASH_ORDER = ['sha384', 'sha256', 'sha512']

_HASHES = {
    'sha256': hashes.SHA256,
    'sha384': hashes.SHA384,
    'sha512': hashes.SHA512}

CERT_EXTENSIONS = ['pem', 'crt', 'cert']
PACKAGE_EXTENSIONS = ['rpm', 'deb', 'fv', 'cap', 'bio', 'bin', 'conf', 'mender']

_HASH_CHUNK_SIZE = 1024 * 1024





def file_extension(filename):
  """Lowercase text after the last '.' of filename, or '' if there is none."""
  basename = os.path.basename(filename)
  if '.' not in basename:
    return ''
  return basename.rsplit('.', 1)[1].lower()


def is_cert_file(filename):
  return file_extension(filename) in CERT_EXTENSIONS


def is_valid_package_file(filename):
  """
  True for the configuration file itself and for files with a permitted
  package extension. A name that merely contains the configuration filename
  (e.g. 'my_intel_manageability.conf') is rejected.
  """
  basename = os.path.basename(filename)
  if basename == inbd.CONFIG_FILE_NAME:
    return True
  if inbd.CONFIG_FILE_NAME in basename:
    return False
  return file_extension(basename) in PACKAGE_EXTENSIONS





class TarContents(object):
  """
  <Purpose>
    What inspect_tar_package() found in a tar package.

  <Fields>
    self.cert_pem       bytes of the first embedded certificate, or None
    self.cert_name      member name of that certificate, or None
    self.config_name    member name of the configuration file, or None
    self.package_names  member names of the package files, in archive order
  """
  def __init__(self):
    self.cert_pem = None
    self.cert_name = None
    self.config_name = None
    self.package_names = []





def inspect_tar_package(fileio, tar_path):
  """
  <Purpose>
    Read the member list of a tar package and check it: every entry must be a
    regular file that is a certificate, the configuration file, or a package
    file; at most one configuration file may be present; there must be a
    configuration file or at least one package file. Only the first
    certificate is kept (and must parse as an X.509 certificate); later ones
    are ignored.

  <Exceptions>
    inbd.InvalidPackage
      if the archive cannot be read or breaks one of the rules above.

    inbd.CertificateInvalid
      if the first certificate cannot be parsed.

  <Returns>
    A TarContents object.
  """
  contents = TarContents()
  config_names = []

  with fileio.open(tar_path) as fileobj:
    try:
      archive = tarfile.open(fileobj=fileobj, mode='r:')
    except tarfile.TarError as e:
      raise inbd.InvalidPackage(
          'could not read tar file ' + repr(tar_path) + ': ' + str(e)) from e

    with archive:
      for member in archive:
        basename = os.path.basename(member.name)

        if not member.isreg():
          raise inbd.InvalidPackage(
              'invalid entry in tarball: ' + repr(member.name) +
              ' is not a regular file')

        if is_cert_file(basename):
          if contents.cert_pem is None:
            pem = archive.extractfile(member).read()
            load_certificate(pem)
            contents.cert_pem = pem
            contents.cert_name = member.name

        elif basename == inbd.CONFIG_FILE_NAME:
          config_names.append(member.name)
          contents.config_name = member.name

        elif is_valid_package_file(basename):
          contents.package_names.append(member.name)

        else:
          raise inbd.InvalidPackage(
              "invalid file in tarball: '" + basename + "'. only valid "
              'configuration files, PEM certificates, and package files are '
              'allowed')

  if len(config_names) > 1:
    raise inbd.InvalidPackage(
        'multiple configuration files found in tarball: ' + repr(config_names))

  if contents.config_name is None and not contents.package_names:
    raise inbd.InvalidPackage('no valid package found in tarball')

  return contents





def load_certificate(pem):
  """
  Parse PEM bytes as an X.509 certificate. Raises inbd.CertificateInvalid if
  they are empty or not a certificate.
  """
  if not pem or not pem.strip():
    raise inbd.CertificateInvalid('empty PEM content')
  try:
    return x509.load_pem_x509_certificate(pem)
  except ValueError as e:
    raise inbd.CertificateInvalid(
        'failed to parse X.509 certificate: ' + str(e)) from e


def rsa_public_key_from_certificate(pem, min_key_size=MIN_KEY_SIZE_BITS):
  """
  <Purpose>
    Return the RSA public key of the PEM certificate, refusing keys shorter
    than min_key_size bits.

  <Exceptions>
    inbd.CertificateInvalid if the certificate is unparseable or not RSA.
    inbd.WeakKey if the key is too short.
  """
  certificate = load_certificate(pem)
  public_key = certificate.public_key()

  if not isinstance(public_key, rsa.RSAPublicKey):
    raise inbd.CertificateInvalid(
        'certificate does not contain an RSA public key')

  if public_key.key_size < min_key_size:
    raise inbd.WeakKey(
        'RSA key size ' + str(public_key.key_size) + ' is below the minimum ' +
        'of ' + str(min_key_size) + ' bits. update rejected')

  return public_key





def hash_file(fileio, path, hash_algorithm):
  """
  Return the lowercase hex digest (str) of the file at path, read through
  fileio in chunks so that packages of any size can be hashed.
  """
  hasher = hashlib.new(hash_algorithm)
  with fileio.open(path) as fileobj:
    for chunk in iter(lambda: fileobj.read(_HASH_CHUNK_SIZE), b''):
      hasher.update(chunk)
  return hasher.hexdigest()





def verify_checksum(public_key, signature_hex, checksum_hex,
    hash_algorithm=inbd.common.DEFAULT_HASH_ALGORITHM, token=None):
  """
  <Purpose>
    Verify an RSA-PSS signature (salt length recovered from the signature)
    over the bytes of checksum_hex, trying each hash of FALLBACK_HASH_ORDER
    in turn. Success with a hash other than hash_algorithm is logged.

  <Exceptions>
    inbd.SignatureFormatInvalid if signature_hex is not hexadecimal.
    inbd.SignatureMismatch if no hash yields a valid signature.
    inbd.VerificationTimeout if token is cancelled between attempts.

  <Returns>
    The name of the hash with which the signature verified.
  """
  if not signature_hex:
    raise inbd.SignatureMissing('invalid signature: signature is empty')

  try:
    signature = binascii.unhexlify(signature_hex.strip())
  except (binascii.Error, ValueError) as e:
    raise inbd.SignatureFormatInvalid(
        'invalid signature format: ' + str(e)) from e

  data = checksum_hex.encode('ascii')
  for name in FALLBACK_HASH_ORDER:
    if token is not None and token.cancelled():
      raise inbd.VerificationTimeout('signature verification timeout')

    hash_class = _HASHES[name]
    try:
      public_key.verify(
          signature, data,
          padding.PSS(mgf=padding.MGF1(hash_class()),
              salt_length=padding.PSS.AUTO),
          hash_class())

    except InvalidSignature:
      continue

    if name != hash_algorithm:
      log.warning('Signature verified using fallback hash ' + name +
          ' instead of the requested ' + hash_algorithm)
    else:
      log.info('Signature verified using ' + name)
    return name

  raise inbd.SignatureMismatch(
      'checksum of data does not match signature in manifest')





class SignatureVerifier(object):
  """
  <Purpose>
    Verifies package signatures, sourcing certificates and enforcing the
    verification deadline.

  <Fields>

    self.fileio
      safe_io.SafeIO used for every file access.

    self.cert_path
      Path of the certificate installed on the host.

    self.timeout
      Seconds allowed for the cryptographic check.

    self.min_key_size
      Minimum RSA key size, in bits.
  """

  def __init__(self, fileio, cert_path=inbd.OTA_PACKAGE_CERT_PATH,
      timeout=VERIFICATION_TIMEOUT_SECONDS, min_key_size=MIN_KEY_SIZE_BITS):
    self.fileio = fileio
    self.cert_path = cert_path
    self.timeout = timeout
    self.min_key_size = min_key_size


  def _host_certificate(self):
    if self.fileio.exists(self.cert_path):
      return self.fileio.read(self.cert_path)
    return None


  def verify(self, signature_hex, file_path,
      hash_algorithm=inbd.common.DEFAULT_HASH_ALGORITHM, token=None):
    """
    <Purpose>
      Verify that signature_hex is a valid signature of the file at
      file_path.

    <Arguments>
      signature_hex
        Hex-encoded signature; may be empty (see module docstring).

      file_path
        The signed file, a tar package or a single package file.

      hash_algorithm
        'sha256', 'sha384' or 'sha512' (any case), or '' for sha384.

      token
        Optional common.CancelToken; the verification deadline is the
        earlier of self.timeout and the token's own deadline.

    <Exceptions>
      inbd.InvalidHashAlgorithm, inbd.SignatureMissing,
      inbd.SignatureFormatInvalid, inbd.SignatureMismatch, inbd.WeakKey,
      inbd.CertificateInvalid, inbd.VerificationTimeout, inbd.InvalidPackage,
      and safe I/O errors.

    <Side Effects>
      A certificate embedded in a tar package is written to a temporary file
      beside the package for the duration of the call.

    <Returns>
      True if the signature was verified, False if verification was skipped
      because no certificate and no signature were available.
    """
    hash_algorithm = inbd.common.normalize_hash_algorithm(hash_algorithm)
    file_path = self.fileio.check_path(file_path)

    cert_pem = None
    temp_cert_path = None

    if file_extension(file_path) == 'tar':
      contents = inspect_tar_package(self.fileio, file_path)
      if contents.cert_pem is not None:
        # The embedded certificate takes priority over the host's.
        fileobj, temp_cert_path = self.fileio.create_temp_file(
            os.path.dirname(file_path), prefix='temp_cert_', suffix='.pem')
        with fileobj:
          fileobj.write(contents.cert_pem)
        cert_pem = contents.cert_pem
    elif not is_valid_package_file(file_path):
      raise inbd.InvalidPackage(
          'signature check failed: unsupported file format: ' +
          repr(os.path.basename(file_path)))

    try:
      if cert_pem is None:
        cert_pem = self._host_certificate()

      if not signature_hex:
        if cert_pem is not None:
          raise inbd.SignatureMissing(
              'signature is required to proceed with the update')
        log.warning('No signing certificate installed and no signature '
            'given: proceeding without signature check on ' + file_path)
        return False

      if cert_pem is None:
        raise inbd.CertificateInvalid(
            'signature check failed: certificate not found at ' +
            self.cert_path)

      if temp_cert_path is not None:
        cert_pem = self.fileio.read(temp_cert_path)

      public_key = rsa_public_key_from_certificate(
          cert_pem, self.min_key_size)

      self._verify_with_deadline(
          public_key, signature_hex, file_path, hash_algorithm, token)

    finally:
      if temp_cert_path is not None:
        try:
          self.fileio.remove(temp_cert_path)
        except inbd.SafeIOError as e:
          log.warning('Failed to remove temporary certificate file ' +
              temp_cert_path + ': ' + str(e))

    log.info('Signature verification passed for ' + file_path)
    return True


  def _verify_with_deadline(self, public_key, signature_hex, file_path,
      hash_algorithm, token):

    timeout = self.timeout
    if token is not None and token.remaining() is not None:
      timeout = min(timeout, token.remaining())

    deadline_token = inbd.common.CancelToken(timeout=timeout, parent=token)

    def check():
      checksum = hash_file(self.fileio, file_path, hash_algorithm)
      return verify_checksum(
          public_key, signature_hex, checksum, hash_algorithm, deadline_token)

    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    future = pool.submit(check)
    try:
      return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as e:
      deadline_token.cancel()
      raise inbd.VerificationTimeout(
          'signature verification timed out after ' + str(timeout) +
          ' seconds') from e
    finally:
      pool.shutdown(wait=False)
