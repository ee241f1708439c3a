"""
<Program Name>
  pki.py

<Purpose>
  Creates the local certificate authority and the certificates with which the
  daemon (inbd) and its command-line client (inbc) authenticate each other
  over the UNIX socket.

  On first start the following are written, all PEM encoded:

    <secret dir>/ca.key, ca.crt          CA private key and certificate
    <secret dir>/inbd.key, inbd.crt      service keys and certificates,
    <secret dir>/inbc.key, inbc.crt      signed by the CA
    <public dir>/ca.pub, inbd.pub, inbc.pub
                                         the matching public keys

  The secret directory is luks.mountPoint from the configuration document if
  that is set (the encrypted volume), else /etc/intel-manageability/secret.
  It is created with mode 0700 and its files with mode 0600. If
  <secret dir>/ca.crt already exists nothing is done.
"""
import inbd
import inbd.safe_io

import os
import ipaddress
import datetime

from cryptography import x509
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

log = inbd.logging.getLogger('inbd.pki')
log.setLevel(inbd.logging.DEBUG)

KEY_SIZE = 4096
PUBLIC_EXPONENT = 65537
CA_COMMON_NAME = 'INBM-CA'
SERVICE_NAMES = ['inbc', 'inbd']
CA_VALIDITY = datetime.timedelta(days=10 * 365)
SERVICE_VALIDITY = datetime.timedelta(days=365)

SUBJECT_FIELDS = [
    (NameOID.COUNTRY_NAME, 'US'),
    (NameOID.STATE_OR_PROVINCE_NAME, 'Oregon'),
    (NameOID.LOCALITY_NAME, 'Hillsboro'),
    (NameOID.ORGANIZATION_NAME, 'Intel'),
    (NameOID.ORGANIZATIONAL_UNIT_NAME, 'ECG')]

SECRET_DIR_PERM = 0o700
PUBLIC_DIR_PERM = 0o755
FILE_PERM = 0o600





def secret_dir_from_config(config_store):
  """
  Return luks.mountPoint from the configuration document, or the default
  secret directory if it is unset or the document cannot be read.
  """
  try:
    mount_point = config_store.get_value('luks.mountPoint', '')
  except inbd.Error as e:
    log.warning('Unable to read the configuration document; using the '
        'default secret directory: ' + str(e))
    return inbd.DEFAULT_SECRET_DIR
  return mount_point or inbd.DEFAULT_SECRET_DIR



def _subject(common_name):
  return x509.Name([x509.NameAttribute(oid, value)
      for oid, value in SUBJECT_FIELDS] +
      [x509.NameAttribute(NameOID.COMMON_NAME, common_name)])



def private_key_pem(key):
  return key.private_bytes(serialization.Encoding.PEM,
      serialization.PrivateFormat.TraditionalOpenSSL,
      serialization.NoEncryption())



def public_key_pem(key):
  return key.public_key().public_bytes(serialization.Encoding.PEM,
      serialization.PublicFormat.SubjectPublicKeyInfo)



def certificate_pem(certificate):
  return certificate.public_bytes(serialization.Encoding.PEM)



def generate_key(key_size=KEY_SIZE):
  return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT,
      key_size=key_size)



def build_ca_certificate(ca_key, now=None):
  """
  <Purpose>
    Build the self-signed CA certificate: CN INBM-CA, valid for ten years,
    usable for signing certificates, CRLs and data, signed with SHA-384.

  <Returns>
    A cryptography x509.Certificate.
  """
  if now is None:
    now = datetime.datetime.now(datetime.timezone.utc)

  name = _subject(CA_COMMON_NAME)
  builder = x509.CertificateBuilder(
      ).subject_name(name
      ).issuer_name(name
      ).public_key(ca_key.public_key()
      ).serial_number(1
      ).not_valid_before(now
      ).not_valid_after(now + CA_VALIDITY
      ).add_extension(x509.BasicConstraints(ca=True, path_length=None),
          critical=True
      ).add_extension(x509.KeyUsage(digital_signature=True,
          content_commitment=False, key_encipherment=False,
          data_encipherment=False, key_agreement=False, key_cert_sign=True,
          crl_sign=True, encipher_only=False, decipher_only=False),
          critical=True)

  return builder.sign(ca_key, hashes.SHA384())



def build_service_certificate(name, service_key, ca_certificate, ca_key,
    now=None):
  """
  <Purpose>
    Build the certificate of service name, signed by the CA: valid for one
    year, for TLS server and client authentication, with subject alternative
    names localhost and 127.0.0.1, signed with SHA-384.
  """
  if now is None:
    now = datetime.datetime.now(datetime.timezone.utc)

  builder = x509.CertificateBuilder(
      ).subject_name(_subject(name)
      ).issuer_name(ca_certificate.subject
      ).public_key(service_key.public_key()
      ).serial_number(x509.random_serial_number()
      ).not_valid_before(now
      ).not_valid_after(now + SERVICE_VALIDITY
      ).add_extension(x509.BasicConstraints(ca=False, path_length=None),
          critical=True
      ).add_extension(x509.KeyUsage(digital_signature=True,
          content_commitment=False, key_encipherment=True,
          data_encipherment=False, key_agreement=False, key_cert_sign=False,
          crl_sign=False, encipher_only=False, decipher_only=False),
          critical=True
      ).add_extension(x509.ExtendedKeyUsage([
          ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
          critical=False
      ).add_extension(x509.SubjectAlternativeName([
          x509.DNSName('localhost'),
          x509.IPAddress(ipaddress.ip_address('127.0.0.1'))]),
          critical=False)

  return builder.sign(ca_key, hashes.SHA384())





class PKIBootstrapper(object):
  """
  <Purpose>
    Writes the local CA and the service certificates if they are absent.

  <Fields>

    self.fileio
      safe_io.SafeIO through which every file is written.

    self.secret_dir, self.public_dir
      Destination directories.

    self.key_size
      RSA modulus size of every generated key.
  """

  def __init__(self, fileio, secret_dir=inbd.DEFAULT_SECRET_DIR,
      public_dir=inbd.PUBLIC_DIR, key_size=KEY_SIZE,
      service_names=SERVICE_NAMES):
    self.fileio = fileio
    self.secret_dir = secret_dir
    self.public_dir = public_dir
    self.key_size = key_size
    self.service_names = list(service_names)


  def ca_certificate_path(self):
    return os.path.join(self.secret_dir, 'ca.crt')


  def certificate_path(self, name):
    return os.path.join(self.secret_dir, name + '.crt')


  def key_path(self, name):
    return os.path.join(self.secret_dir, name + '.key')


  def public_key_path(self, name):
    return os.path.join(self.public_dir, name + '.pub')


  def exists(self):
    return self.fileio.exists(self.ca_certificate_path())


  def _prepare_directories(self):
    self.fileio.mkdir_all(self.secret_dir, SECRET_DIR_PERM)
    self.fileio.mkdir_all(self.public_dir, PUBLIC_DIR_PERM)
    # makedirs leaves the mode of a directory that already existed alone.
    try:
      os.chmod(self.secret_dir, SECRET_DIR_PERM)
    except OSError as e:
      raise inbd.safe_io.translate_os_error(
          e, 'setting the mode of', self.secret_dir) from e


  def _write_key_pair(self, name, key, certificate):
    self.fileio.write(self.key_path(name), private_key_pem(key), FILE_PERM)
    self.fileio.write(self.certificate_path(name), certificate_pem(certificate),
        FILE_PERM)
    self.fileio.write(self.public_key_path(name), public_key_pem(key),
        FILE_PERM)


  def ensure(self):
    """
    <Purpose>
      Generate and write the CA and service certificates unless the CA
      certificate already exists.

    <Exceptions>
      inbd.TLSSetupError if a key or certificate cannot be generated.
      inbd.SafeIOError subclasses if a file cannot be written.

    <Returns>
      True if certificates were generated, False if they already existed.
    """
    if self.exists():
      log.debug('CA certificate ' + self.ca_certificate_path() +
          ' exists; not generating certificates')
      return False

    log.info('Generating local CA and service certificates in ' +
        self.secret_dir)
    self._prepare_directories()

    try:
      ca_key = generate_key(self.key_size)
      ca_certificate = build_ca_certificate(ca_key)
    except ValueError as e:
      raise inbd.TLSSetupError(
          'failed to generate local CA: ' + str(e)) from e

    # The CA certificate is written last so that an interrupted run is
    # repeated in full on the next start.
    self.fileio.write(self.key_path('ca'), private_key_pem(ca_key), FILE_PERM)
    self.fileio.write(self.public_key_path('ca'), public_key_pem(ca_key),
        FILE_PERM)

    for name in self.service_names:
      try:
        key = generate_key(self.key_size)
        certificate = build_service_certificate(
            name, key, ca_certificate, ca_key)
      except ValueError as e:
        raise inbd.TLSSetupError('failed to generate and sign cert for ' +
            name + ': ' + str(e)) from e
      self._write_key_pair(name, key, certificate)
      log.info('Generated certificate for ' + name)

    self.fileio.write(self.ca_certificate_path(),
        certificate_pem(ca_certificate), FILE_PERM)
    log.info('Local CA certificate written to ' + self.ca_certificate_path())
    return True
