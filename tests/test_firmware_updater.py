"""
<Program Name>
  test_firmware_updater.py

<Purpose>
  Unit testing for inbd/updaters/firmware.py. The download, the system
  information, the firmware tool and the reboot are all faked; the firmware
  registry and (in some tests) the signature verifier are real.
"""
import inbd
import inbd.common
import inbd.pki
import inbd.safe_io
import inbd.sig
import inbd.updaters.fw_registry
import inbd.updaters.firmware as firmware

import unittest
import os
import json
import shutil
import datetime
import tempfile
import threading

TEMP_DIR = None

PLATFORM = 'Test Platform'
SYSTEM_GUID = '6b2af7e1-8f05-4d4a-a8c8-4b5d3c0e8f21'
GUID_LISTING = (
    'Firmware resources:\n'
    'System Firmware type, {' + SYSTEM_GUID + '} version 1\n'
    'Device Firmware type, {00000000-0000-0000-0000-000000000001}\n')

REGISTRY = {'firmware_component': {'firmware_products': [
    {'name': PLATFORM,
     'bios_vendor': 'Test Vendor',
     'guid': True,
     'firmware_tool': 'fwtool',
     'firmware_tool_args': '--apply',
     'firmware_tool_check_args': '-s',
     'firmware_file_type': 'bin'},
    {'name': 'No GUID Platform',
     'bios_vendor': 'Test Vendor',
     'firmware_tool': 'simpletool',
     'firmware_file_type': 'cap'}]}}



class FakeSystemInfo(object):
  def __init__(self, product_name=PLATFORM, bios_release_date=''):
    self.product_name = product_name
    self.bios_release_date = bios_release_date

  def get_hardware_info(self):
    return {'system_product_name': self.product_name}

  def get_firmware_info(self):
    return {'bios_release_date': self.bios_release_date}



class FakeDownloader(object):
  """Writes a small file named after the URL into the destination."""

  def __init__(self, error=None):
    self.urls = []
    self.error = error

  def download(self, url, destination_dir=None, filename=None, token=None):
    self.urls.append(url)
    if self.error is not None:
      raise self.error
    path = os.path.join(destination_dir, url.rsplit('/', 1)[1])
    with open(path, 'wb') as fileobj:
      fileobj.write(b'firmware image')
    return path



class FakeVerifier(object):
  def __init__(self, error=None):
    self.calls = []
    self.error = error

  def verify(self, signature, path, hash_algorithm='', token=None):
    self.calls.append((signature, path, hash_algorithm))
    if self.error is not None:
      raise self.error
    return True



class FakePowerManager(object):
  def __init__(self):
    self.reboots = 0

  def reboot(self):
    self.reboots += 1



class FakeRun(object):
  """
  Records each command. 'tar' prints tar_listing; '<tool> -l' prints
  GUID_LISTING; commands whose program is in failures raise CommandFailed.
  """

  def __init__(self, tar_listing=b'', failures=()):
    self.tar_listing = tar_listing
    self.failures = failures
    self.commands = []

  def __call__(self, argv, **kwargs):
    self.commands.append(list(argv))
    if argv[0] in self.failures:
      raise inbd.CommandFailed('failed', returncode=1, stdout=b'',
          stderr=b'flash error')
    if argv[0] == 'tar':
      return self.tar_listing, b''
    if argv[1:] == ['-l']:
      return GUID_LISTING.encode('utf-8'), b''
    return b'done', b''





class TestFirmwareUpdater(unittest.TestCase):
  """
  "unittest"-style test class for the firmware.py updater module
  """

  @classmethod
  def setUpClass(cls):
    global TEMP_DIR
    TEMP_DIR = tempfile.mkdtemp(prefix='inbd_test_firmware_', dir='/tmp')
    cls.fileio = inbd.safe_io.SafeIO()

    cls.registry_path = os.path.join(TEMP_DIR, 'firmware_tool_info.conf')
    with open(cls.registry_path, 'w') as fileobj:
      json.dump(REGISTRY, fileobj)



  @classmethod
  def tearDownClass(cls):
    shutil.rmtree(TEMP_DIR)



  def setUp(self):
    self.download_dir = tempfile.mkdtemp(dir=TEMP_DIR)
    self.downloader = FakeDownloader()
    self.verifier = FakeVerifier()
    self.system_info = FakeSystemInfo()
    self.power_manager = FakePowerManager()
    self.run = FakeRun()
    self.lock = threading.Lock()



  def make_updater(self, registry_path=None):
    registry = inbd.updaters.fw_registry.FirmwareRegistry(self.fileio,
        registry_path=registry_path or self.registry_path, schema_path=None)
    return firmware.FirmwareUpdater(self.fileio, self.downloader,
        self.verifier, registry, self.system_info, self.power_manager,
        run=self.run, download_dir=self.download_dir, lock=self.lock)



  def request(self, **fields):
    request = {'url': 'https://files.example.com/fw.bin', 'signature': 'ab',
        'hash_algorithm': '', 'release_date': '2030-01-01T00:00:00Z',
        'do_not_reboot': False}
    request.update(fields)
    return request





  def test_01_helpers(self):
    self.assertEqual('package', firmware.file_kind('a.CAP'))
    self.assertEqual('bios', firmware.file_kind('a.bin'))
    self.assertEqual('cert', firmware.file_kind('a.pem'))
    self.assertEqual('', firmware.file_kind('a.txt'))
    self.assertEqual('', firmware.file_kind('noext'))

    self.assertEqual(('new.fv', 'signer.crt'), firmware.files_from_tar_listing(
        'old.fv\nsigner.crt\n\nnew.fv\nreadme.txt\n'))
    self.assertEqual(('', ''), firmware.files_from_tar_listing(''))

    self.assertEqual([SYSTEM_GUID], firmware.parse_guids(GUID_LISTING))
    self.assertEqual(
        ['AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE',
        'FFFFFFFF-0000-1111-2222-333333333333'],
        firmware.parse_guids(
        'System Firmware type, {AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE}\n'
        'system-firmware type, {FFFFFFFF-0000-1111-2222-333333333333}'))
    self.assertEqual([], firmware.parse_guids(
        'System Firmware type, malformed\nSystem Firmware type'))

    self.assertEqual(firmware.EPOCH, firmware.parse_release_date(''))
    self.assertEqual(firmware.EPOCH, firmware.parse_release_date(None))
    self.assertEqual(2024,
        firmware.parse_release_date('2024-05-01T00:00:00Z').year)
    with self.assertRaises(inbd.InvalidRequest):
      firmware.parse_release_date('last tuesday')



  def test_02_success(self):
    response = self.make_updater().update_firmware(self.request())

    self.assertEqual({'status_code': 200, 'error': 'Success'}, response)
    self.assertEqual(['https://files.example.com/fw.bin'], self.downloader.urls)

    package_path = os.path.join(self.download_dir, 'fw.bin')
    self.assertEqual([('ab', package_path, 'sha384')], self.verifier.calls)
    self.assertEqual([
        ['fwtool', '-s'],
        ['fwtool', '-l'],
        ['fwtool', '--apply', SYSTEM_GUID, package_path]],
        self.run.commands)

    # Package removed, system rebooted.
    self.assertEqual([], os.listdir(self.download_dir))
    self.assertEqual(1, self.power_manager.reboots)



  def test_03_hash_algorithm(self):
    response = self.make_updater().update_firmware(
        self.request(hash_algorithm='SHA512', do_not_reboot=True))
    self.assertEqual(200, response['status_code'])
    self.assertEqual('sha512', self.verifier.calls[0][2])
    self.assertEqual(0, self.power_manager.reboots)

    response = self.make_updater().update_firmware(
        self.request(hash_algorithm='md5'))
    self.assertEqual(400, response['status_code'])
    self.assertIn('invalid hash algorithm', response['error'])
    # Rejected before anything was downloaded.
    self.assertEqual(1, len(self.downloader.urls))



  def test_04_not_required(self):
    now = datetime.datetime.now(datetime.timezone.utc)
    self.system_info.bios_release_date = now.isoformat()
    yesterday = (now - datetime.timedelta(days=1)).isoformat()

    response = self.make_updater().update_firmware(
        self.request(release_date=yesterday))

    self.assertEqual(400, response['status_code'])
    self.assertIn('not required', response['error'])
    with self.assertRaises(inbd.NotRequired):
      self.make_updater()._check_update_required(
          self.request(release_date=yesterday))
    self.assertEqual([], self.downloader.urls)
    self.assertEqual([], os.listdir(self.download_dir))
    self.assertEqual(0, self.power_manager.reboots)

    # Equal dates: not required either.
    response = self.make_updater().update_firmware(
        self.request(release_date=now.isoformat()))
    self.assertEqual(400, response['status_code'])

    # A missing release date counts as the epoch.
    response = self.make_updater().update_firmware(
        self.request(release_date=''))
    self.assertEqual(400, response['status_code'])

    # An unknown current date does not block the update.
    self.system_info.bios_release_date = ''
    response = self.make_updater().update_firmware(
        self.request(release_date=yesterday))
    self.assertEqual(200, response['status_code'])



  def test_05_platform_not_found(self):
    self.system_info.product_name = 'Mystery Board'
    response = self.make_updater().update_firmware(self.request())

    self.assertEqual(500, response['status_code'])
    self.assertIn('Mystery Board', response['error'])
    self.assertEqual([], self.downloader.urls)



  def test_06_download_failure(self):
    self.downloader.error = inbd.UntrustedRepository('not trusted')
    response = self.make_updater().update_firmware(self.request())
    self.assertEqual(400, response['status_code'])

    self.downloader.error = inbd.DownloadFailed('status 404')
    response = self.make_updater().update_firmware(self.request())
    self.assertEqual(500, response['status_code'])
    self.assertEqual([], self.run.commands)



  def test_07_signature_failure(self):
    self.verifier.error = inbd.SignatureMismatch('mismatch')
    response = self.make_updater().update_firmware(self.request())

    self.assertEqual(400, response['status_code'])
    self.assertIn('Signature verification failed', response['error'])
    self.assertEqual([], self.run.commands)
    self.assertEqual([], os.listdir(self.download_dir))
    self.assertEqual(0, self.power_manager.reboots)



  def test_08_signature_skipped_without_certificate(self):
    cert_path = os.path.join(TEMP_DIR, 'ota_package_cert.pem')
    self.verifier = inbd.sig.SignatureVerifier(self.fileio, cert_path=cert_path)

    response = self.make_updater().update_firmware(
        self.request(signature='', do_not_reboot=True))
    self.assertEqual(200, response['status_code'])

    key = inbd.pki.generate_key(2048)
    with open(cert_path, 'wb') as fileobj:
      fileobj.write(inbd.pki.certificate_pem(
          inbd.pki.build_ca_certificate(key)))

    try:
      response = self.make_updater().update_firmware(
          self.request(signature=''))
    finally:
      os.remove(cert_path)

    self.assertEqual(400, response['status_code'])
    self.assertIn('signature is required', response['error'])



  def test_09_tar_package(self):
    self.run.tar_listing = b'capsule.cap\nsigner.pem\n'
    response = self.make_updater().update_firmware(
        self.request(url='https://files.example.com/update.tar'))

    self.assertEqual(200, response['status_code'])
    tar_path = os.path.join(self.download_dir, 'update.tar')
    self.assertEqual(
        ['tar', '-xvf', tar_path, '--no-same-owner', '-C', self.download_dir],
        self.run.commands[0])
    self.assertEqual(os.path.join(self.download_dir, 'capsule.cap'),
        self.run.commands[-1][-1])

    self.run = FakeRun(tar_listing=b'readme.txt\n')
    response = self.make_updater().update_firmware(
        self.request(url='https://files.example.com/update.tar'))
    self.assertEqual(500, response['status_code'])
    self.assertIn('no firmware file', response['error'])
    self.assertEqual([], os.listdir(self.download_dir))



  def test_10_guid_checks(self):
    response = self.make_updater().update_firmware(
        self.request(guid=SYSTEM_GUID.upper()))
    self.assertEqual(200, response['status_code'])
    self.assertEqual(SYSTEM_GUID.upper(), self.run.commands[-1][2])

    response = self.make_updater().update_firmware(
        self.request(guid='11111111-2222-3333-4444-555555555555'))
    self.assertEqual(500, response['status_code'])
    self.assertIn('GUID in manifest does not match', response['error'])

    # No GUID step for platforms that do not ask for one.
    self.system_info.product_name = 'No GUID Platform'
    self.run = FakeRun()
    response = self.make_updater().update_firmware(
        self.request(url='https://files.example.com/fw.cap'))
    self.assertEqual(200, response['status_code'])
    self.assertEqual(
        [['simpletool', os.path.join(self.download_dir, 'fw.cap')]],
        self.run.commands)



  def test_11_tool_failure(self):
    self.run = FakeRun(failures=('fwtool',))
    response = self.make_updater().update_firmware(self.request())

    self.assertEqual(500, response['status_code'])
    self.assertIn('firmware tool check failed', response['error'])
    self.assertEqual(0, self.power_manager.reboots)
    self.assertEqual([], os.listdir(self.download_dir))



  def test_12_one_update_at_a_time(self):
    self.lock.acquire()
    try:
      response = self.make_updater().update_firmware(self.request())
    finally:
      self.lock.release()

    self.assertEqual(500, response['status_code'])
    self.assertIn('another update is in progress', response['error'])
    self.assertEqual([], self.downloader.urls)



  def test_13_cancelled(self):
    token = inbd.common.CancelToken()
    token.cancel()
    response = self.make_updater().update_firmware(self.request(), token)

    self.assertEqual(500, response['status_code'])
    self.assertEqual([], self.downloader.urls)



  def test_14_malformed_tool_arguments(self):
    for field in ['firmware_tool_args', 'firmware_tool_check_args']:
      product = dict(REGISTRY['firmware_component']['firmware_products'][0])
      product[field] = '--apply "unterminated'
      registry_path = os.path.join(TEMP_DIR, field + '.conf')
      with open(registry_path, 'w') as fileobj:
        json.dump({'firmware_component': {'firmware_products': [product]}},
            fileobj)

      self.run = FakeRun()
      response = self.make_updater(registry_path).update_firmware(
          self.request())

      self.assertEqual(500, response['status_code'])
      self.assertIn('invalid firmware tool arguments', response['error'])
      self.assertNotIn(['fwtool', '--apply', 'unterminated'],
          self.run.commands)
      self.assertEqual(0, self.power_manager.reboots)
      self.assertEqual([], os.listdir(self.download_dir))
      self.assertFalse(self.lock.locked())

    with self.assertRaises(firmware._Abort):
      firmware.split_tool_args('--apply "unterminated')
    self.assertEqual(['-a', 'b c'], firmware.split_tool_args('-a "b c"'))



  def test_15_errors_become_responses(self):
    class BrokenSystemInfo(FakeSystemInfo):
      def get_firmware_info(self):
        raise inbd.UnmarshalFailed('unreadable DMI table')

    self.system_info = BrokenSystemInfo()
    response = self.make_updater().update_firmware(self.request())

    self.assertEqual(500, response['status_code'])
    self.assertEqual('unreadable DMI table', response['error'])
    self.assertEqual([], self.downloader.urls)





# Run unit test.
if __name__ == '__main__':
  unittest.main()
