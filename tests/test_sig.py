"""
<Program Name>
  test_sig.py

<Purpose>
  Unit testing for inbd/sig.py: package signature verification with a host
  certificate and with certificates embedded in tar packages.
"""
import inbd
import inbd.sig as sig
import inbd.pki
import inbd.safe_io
import inbd.common

import unittest
import os
import io
import shutil
import tarfile
import tempfile
import hashlib
import binascii

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding

TEMP_DIR = None



def sign_file(key, path, hash_name='sha384', pss_hash_name=None):
  """
  Sign the file the way package signing tools do: the hex digest of the file,
  signed with RSA-PSS. Returns the signature as hex.
  """
  if pss_hash_name is None:
    pss_hash_name = hash_name

  with open(path, 'rb') as fileobj:
    checksum = hashlib.new(hash_name, fileobj.read()).hexdigest()

  hash_class = sig._HASHES[pss_hash_name]
  signature = key.sign(checksum.encode('ascii'),
      padding.PSS(mgf=padding.MGF1(hash_class()),
          salt_length=padding.PSS.MAX_LENGTH),
      hash_class())
  return binascii.hexlify(signature).decode('ascii')



def add_tar_member(archive, name, data):
  info = tarfile.TarInfo(name)
  info.size = len(data)
  archive.addfile(info, io.BytesIO(data))



class RecordingPublicKey(object):
  """Records the hash of each verify() call; only accept verifies."""

  def __init__(self, accept):
    self.accept = accept
    self.tried = []

  def verify(self, signature, data, signature_padding, algorithm):
    self.tried.append(algorithm.name)
    if algorithm.name != self.accept:
      raise InvalidSignature()





class TestSig(unittest.TestCase):
  """
  "unittest"-style test class for the sig.py module
  """

  @classmethod
  def setUpClass(cls):
    global TEMP_DIR
    TEMP_DIR = tempfile.mkdtemp(prefix='inbd_test_sig_', dir='/tmp')

    cls.fileio = inbd.safe_io.SafeIO()

    cls.key = inbd.pki.generate_key(2048)
    cls.cert_pem = inbd.pki.certificate_pem(
        inbd.pki.build_ca_certificate(cls.key))

    cls.other_key = inbd.pki.generate_key(2048)
    cls.other_cert_pem = inbd.pki.certificate_pem(
        inbd.pki.build_ca_certificate(cls.other_key))

    cls.cert_path = os.path.join(TEMP_DIR, 'ota_package_cert.pem')

    cls.package_path = os.path.join(TEMP_DIR, 'firmware.bin')
    with open(cls.package_path, 'wb') as fileobj:
      fileobj.write(b'firmware image contents ' * 100)



  @classmethod
  def tearDownClass(cls):
    shutil.rmtree(TEMP_DIR)



  def setUp(self):
    with open(self.cert_path, 'wb') as fileobj:
      fileobj.write(self.cert_pem)
    self.verifier = sig.SignatureVerifier(self.fileio, cert_path=self.cert_path)



  def write_tar(self, name, members):
    path = os.path.join(TEMP_DIR, name)
    with tarfile.open(path, 'w') as archive:
      for member_name, data in members:
        add_tar_member(archive, member_name, data)
    return path





  def test_01_file_names(self):
    self.assertEqual('bin', sig.file_extension('/a/b/fw.BIN'))
    self.assertEqual('', sig.file_extension('/a.d/noext'))
    self.assertTrue(sig.is_cert_file('cert.crt'))
    self.assertFalse(sig.is_cert_file('cert.der'))

    self.assertTrue(sig.is_valid_package_file('intel_manageability.conf'))
    self.assertFalse(sig.is_valid_package_file('my_intel_manageability.conf'))
    self.assertTrue(sig.is_valid_package_file('other.conf'))
    self.assertTrue(sig.is_valid_package_file('capsule.cap'))
    self.assertFalse(sig.is_valid_package_file('script.sh'))



  def test_02_verify_host_certificate(self):
    signature = sign_file(self.key, self.package_path)
    self.assertTrue(self.verifier.verify(signature, self.package_path, ''))
    self.assertTrue(
        self.verifier.verify(signature.upper(), self.package_path, 'SHA384'))

    signature = sign_file(self.key, self.package_path, 'sha512')
    self.assertTrue(
        self.verifier.verify(signature, self.package_path, 'sha512'))



  def test_03_hash_fallback(self):
    # Digest computed with the requested hash, but PSS signed with sha256.
    signature = sign_file(self.key, self.package_path, 'sha384', 'sha256')
    public_key = sig.rsa_public_key_from_certificate(self.cert_pem)

    with open(self.package_path, 'rb') as fileobj:
      checksum = hashlib.sha384(fileobj.read()).hexdigest()

    self.assertEqual('sha256',
        sig.verify_checksum(public_key, signature, checksum, 'sha384'))

    # The order is fixed, whatever was requested.
    recorder = RecordingPublicKey(accept='sha512')
    self.assertEqual('sha512',
        sig.verify_checksum(recorder, signature, checksum, 'sha512'))
    self.assertEqual(['sha384', 'sha256', 'sha512'], recorder.tried)



  def test_04_mismatch(self):
    signature = sign_file(self.other_key, self.package_path)
    with self.assertRaises(inbd.SignatureMismatch):
      self.verifier.verify(signature, self.package_path)

    altered_path = os.path.join(TEMP_DIR, 'altered.bin')
    with open(altered_path, 'wb') as fileobj:
      fileobj.write(b'something else entirely')
    signature = sign_file(self.key, altered_path)
    with open(altered_path, 'ab') as fileobj:
      fileobj.write(b'!')
    with self.assertRaises(inbd.SignatureMismatch):
      self.verifier.verify(signature, altered_path)

    with self.assertRaises(inbd.SignatureFormatInvalid):
      self.verifier.verify('not hex at all', self.package_path)

    with self.assertRaises(inbd.InvalidHashAlgorithm):
      self.verifier.verify('abcd', self.package_path, 'md5')



  def test_05_missing_signature_and_certificate(self):
    # Certificate present, signature empty.
    with self.assertRaises(inbd.SignatureMissing) as context:
      self.verifier.verify('', self.package_path)
    self.assertEqual(400, context.exception.status_code)

    # Neither certificate nor signature: skipped.
    os.remove(self.cert_path)
    self.assertFalse(self.verifier.verify('', self.package_path))

    # A signature but no certificate to check it with.
    with self.assertRaises(inbd.CertificateInvalid):
      self.verifier.verify('abcd', self.package_path)



  def test_06_weak_key(self):
    weak_key = inbd.pki.generate_key(1024)
    weak_pem = inbd.pki.certificate_pem(
        inbd.pki.build_ca_certificate(weak_key))

    with open(self.cert_path, 'wb') as fileobj:
      fileobj.write(weak_pem)

    signature = sign_file(weak_key, self.package_path)
    with self.assertRaises(inbd.WeakKey):
      self.verifier.verify(signature, self.package_path)

    # One bit short of the minimum.
    short_key = inbd.pki.generate_key(2047)
    with open(self.cert_path, 'wb') as fileobj:
      fileobj.write(inbd.pki.certificate_pem(
          inbd.pki.build_ca_certificate(short_key)))
    with self.assertRaises(inbd.WeakKey):
      self.verifier.verify(sign_file(short_key, self.package_path),
          self.package_path)

    # Exactly the minimum.
    self.assertEqual(2048, self.key.key_size)
    with open(self.cert_path, 'wb') as fileobj:
      fileobj.write(self.cert_pem)
    self.assertTrue(self.verifier.verify(
        sign_file(self.key, self.package_path), self.package_path))

    with self.assertRaises(inbd.CertificateInvalid):
      sig.load_certificate(b'')
    with self.assertRaises(inbd.CertificateInvalid):
      sig.load_certificate(b'-----BEGIN CERTIFICATE-----\nAAAA\n')



  def test_07_tar_with_embedded_certificate(self):
    package_data = b'deb package data'
    tar_path = self.write_tar('with_cert.tar',
        [('package.deb', package_data), ('signer.pem', self.other_cert_pem)])

    # Signed by the embedded certificate's key, not the host's.
    signature = sign_file(self.other_key, tar_path)
    self.assertTrue(self.verifier.verify(signature, tar_path))

    with self.assertRaises(inbd.SignatureMismatch):
      self.verifier.verify(sign_file(self.key, tar_path), tar_path)

    # The temporary certificate file is gone.
    self.assertEqual([], [name for name in os.listdir(TEMP_DIR)
        if name.startswith('temp_cert_')])



  def test_08_tar_contents(self):
    tar_path = self.write_tar('bad_member.tar',
        [('package.deb', b'data'), ('run.sh', b'#!/bin/sh\n')])
    with self.assertRaises(inbd.InvalidPackage):
      sig.inspect_tar_package(self.fileio, tar_path)

    tar_path = self.write_tar('two_configs.tar',
        [('a/intel_manageability.conf', b'{}'),
        ('b/intel_manageability.conf', b'{}')])
    with self.assertRaises(inbd.InvalidPackage):
      sig.inspect_tar_package(self.fileio, tar_path)

    tar_path = self.write_tar('cert_only.tar', [('c.pem', self.cert_pem)])
    with self.assertRaises(inbd.InvalidPackage):
      sig.inspect_tar_package(self.fileio, tar_path)

    tar_path = self.write_tar('bad_cert.tar',
        [('package.deb', b'data'), ('c.pem', b'not a certificate')])
    with self.assertRaises(inbd.CertificateInvalid):
      sig.inspect_tar_package(self.fileio, tar_path)

    tar_path = self.write_tar('config.tar',
        [('intel_manageability.conf', b'{"a": 1}'),
        ('first.crt', self.cert_pem), ('second.crt', self.other_cert_pem)])
    contents = sig.inspect_tar_package(self.fileio, tar_path)
    self.assertEqual('intel_manageability.conf', contents.config_name)
    self.assertEqual('first.crt', contents.cert_name)
    self.assertEqual(self.cert_pem, contents.cert_pem)
    self.assertEqual([], contents.package_names)

    not_tar = os.path.join(TEMP_DIR, 'not_really.tar')
    with open(not_tar, 'wb') as fileobj:
      fileobj.write(b'this is not a tar archive' * 40)
    with self.assertRaises(inbd.InvalidPackage):
      sig.inspect_tar_package(self.fileio, not_tar)



  def test_09_unsupported_file_and_timeout(self):
    script = os.path.join(TEMP_DIR, 'update.sh')
    with open(script, 'wb') as fileobj:
      fileobj.write(b'#!/bin/sh\n')
    with self.assertRaises(inbd.InvalidPackage):
      self.verifier.verify('abcd', script)

    token = inbd.common.CancelToken()
    token.cancel()
    with self.assertRaises(inbd.VerificationTimeout):
      self.verifier.verify(
          sign_file(self.key, self.package_path), self.package_path,
          token=token)





# Run unit test.
if __name__ == '__main__':
  unittest.main()
