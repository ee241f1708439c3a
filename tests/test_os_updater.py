"""
<Program Name>
  test_os_updater.py

<Purpose>
  Unit testing for inbd/updaters/os_updater.py. The Ubuntu updater, the
  sources manager, the configuration and the reboot are faked; os-release is
  a file in a temporary directory.
"""
import inbd
import inbd.common
import inbd.safe_io
import inbd.updaters.ubuntu as ubuntu
import inbd.updaters.os_updater as os_updater

import unittest
import os
import shutil
import tempfile
import threading

TEMP_DIR = None



class FakeUbuntuUpdater(object):
  def __init__(self, snapshot_error=None, updated=True, update_error=None):
    self.snapshot_error = snapshot_error
    self.updated = updated
    self.update_error = update_error
    self.snapshots = 0
    self.updates = []

  def snapshot(self):
    self.snapshots += 1
    if self.snapshot_error is not None:
      raise self.snapshot_error
    return 7

  def update(self, mode=ubuntu.MODE_FULL, packages=None):
    self.updates.append((mode, packages))
    if self.update_error is not None:
      raise self.update_error
    return self.updated



class FakeSourcesManager(object):
  def __init__(self, error=None):
    self.calls = []
    self.error = error

  def _record(self, *call):
    self.calls.append(call)
    if self.error is not None:
      raise self.error

  def update_os_source(self, sources):
    self._record('update_os_source', sources)

  def add_application_source(self, filename, sources, gpg_key_uri='',
      gpg_key_name='', token=None):
    self._record('add_application_source', filename, sources, gpg_key_uri,
        gpg_key_name)

  def remove_application_source(self, filename, gpg_key_name=''):
    self._record('remove_application_source', filename, gpg_key_name)



class FakeConfigStore(object):
  def __init__(self, values=None):
    self.values = values or {}

  def get_value(self, path, default=None):
    return self.values.get(path, default)



class FakePowerManager(object):
  def __init__(self, error=None):
    self.reboots = 0
    self.error = error

  def reboot(self):
    self.reboots += 1
    if self.error is not None:
      raise self.error





class TestOSUpdateOrchestrator(unittest.TestCase):
  """
  "unittest"-style test class for the os_updater.py module
  """

  @classmethod
  def setUpClass(cls):
    global TEMP_DIR
    TEMP_DIR = tempfile.mkdtemp(prefix='inbd_test_os_updater_', dir='/tmp')
    cls.fileio = inbd.safe_io.SafeIO()

    cls.ubuntu_release = os.path.join(TEMP_DIR, 'os-release-ubuntu')
    with open(cls.ubuntu_release, 'w') as fileobj:
      fileobj.write('NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\n')

    cls.emt_release = os.path.join(TEMP_DIR, 'os-release-emt')
    with open(cls.emt_release, 'w') as fileobj:
      fileobj.write('NAME="Edge Microvisor Toolkit"\nID=emt\n')



  @classmethod
  def tearDownClass(cls):
    shutil.rmtree(TEMP_DIR)



  def setUp(self):
    self.ubuntu_updater = FakeUbuntuUpdater()
    self.sources_manager = FakeSourcesManager()
    self.config_store = FakeConfigStore(
        {'os_updater.proceedWithoutRollback': False})
    self.power_manager = FakePowerManager()
    self.os_release_path = self.ubuntu_release
    self.lock = threading.Lock()



  def make_orchestrator(self):
    return os_updater.OSUpdateOrchestrator(self.fileio, self.config_store,
        self.ubuntu_updater, self.sources_manager, self.power_manager,
        os_release_path=self.os_release_path, lock=self.lock)





  def test_01_update_system_software(self):
    response = self.make_orchestrator().update_system_software(
        {'mode': ubuntu.MODE_FULL, 'package_list': ['vim']})

    self.assertEqual({'status_code': 200, 'error': 'Success'}, response)
    self.assertEqual(1, self.ubuntu_updater.snapshots)
    self.assertEqual([(ubuntu.MODE_FULL, ['vim'])], self.ubuntu_updater.updates)
    self.assertEqual(1, self.power_manager.reboots)

    # Defaults: full mode, every package.
    self.make_orchestrator().update_system_software({})
    self.assertEqual((ubuntu.MODE_FULL, []), self.ubuntu_updater.updates[-1])



  def test_02_no_reboot(self):
    orchestrator = self.make_orchestrator()

    orchestrator.update_system_software({'mode': ubuntu.MODE_DOWNLOAD_ONLY})
    orchestrator.update_system_software({'do_not_reboot': True})
    self.ubuntu_updater.updated = False
    response = orchestrator.update_system_software({})

    self.assertEqual(200, response['status_code'])
    self.assertEqual(3, len(self.ubuntu_updater.updates))
    self.assertEqual(0, self.power_manager.reboots)

    # A failed reboot is not a failed update.
    self.ubuntu_updater.updated = True
    self.power_manager.error = inbd.CommandFailed('reboot failed')
    response = orchestrator.update_system_software({})
    self.assertEqual(200, response['status_code'])



  def test_03_snapshot_failure(self):
    self.ubuntu_updater.snapshot_error = inbd.PreconditionError(
        'root filesystem is not btrfs')

    response = self.make_orchestrator().update_system_software({})
    self.assertEqual(500, response['status_code'])
    self.assertIn('proceedWithoutRollback configuration flag is false',
        response['error'])
    self.assertIn('root filesystem is not btrfs', response['error'])
    self.assertEqual([], self.ubuntu_updater.updates)

    self.config_store.values['os_updater.proceedWithoutRollback'] = True
    response = self.make_orchestrator().update_system_software({})
    self.assertEqual(200, response['status_code'])
    self.assertEqual(1, len(self.ubuntu_updater.updates))



  def test_04_failures(self):
    self.os_release_path = self.emt_release
    response = self.make_orchestrator().update_system_software({})
    self.assertEqual(415, response['status_code'])
    self.assertEqual(0, self.ubuntu_updater.snapshots)

    self.os_release_path = self.ubuntu_release
    response = self.make_orchestrator().update_system_software(
        {'url': 'http://files.example.com/update'})
    self.assertEqual(400, response['status_code'])

    self.ubuntu_updater.update_error = inbd.InsufficientDiskSpace('no space')
    response = self.make_orchestrator().update_system_software({})
    self.assertEqual(500, response['status_code'])
    self.assertEqual('no space', response['error'])
    self.assertEqual(0, self.power_manager.reboots)

    self.lock.acquire()
    try:
      response = self.make_orchestrator().update_system_software({})
    finally:
      self.lock.release()
    self.assertEqual(500, response['status_code'])
    self.assertIn('another update is in progress', response['error'])

    self.ubuntu_updater.update_error = None
    token = inbd.common.CancelToken()
    token.cancel()
    updates = len(self.ubuntu_updater.updates)
    response = self.make_orchestrator().update_system_software({}, token)
    self.assertEqual(500, response['status_code'])
    self.assertEqual(updates, len(self.ubuntu_updater.updates))



  def test_05_sources(self):
    orchestrator = self.make_orchestrator()

    response = orchestrator.update_os_source({'source_list': ['deb a b c']})
    self.assertEqual({'status_code': 200, 'error': 'Success'}, response)

    response = orchestrator.add_application_source({'filename': 'x.list',
        'source': ['deb a b c'], 'gpg_key_uri': 'https://k/key.asc',
        'gpg_key_name': 'x.gpg'})
    self.assertEqual(200, response['status_code'])

    response = orchestrator.remove_application_source(
        {'filename': 'x.list', 'gpg_key_name': 'x.gpg'})
    self.assertEqual(200, response['status_code'])

    self.assertEqual([
        ('update_os_source', ['deb a b c']),
        ('add_application_source', 'x.list', ['deb a b c'],
            'https://k/key.asc', 'x.gpg'),
        ('remove_application_source', 'x.list', 'x.gpg')],
        self.sources_manager.calls)

    self.sources_manager.error = inbd.FileNotFound('source file does not '
        'exist')
    response = orchestrator.remove_application_source({'filename': 'y.list'})
    self.assertEqual(500, response['status_code'])
    self.assertIn('does not exist', response['error'])

    self.os_release_path = self.emt_release
    orchestrator = self.make_orchestrator()
    for response in [orchestrator.update_os_source({'source_list': ['x']}),
        orchestrator.add_application_source({'filename': 'x', 'source': []}),
        orchestrator.remove_application_source({'filename': 'x'})]:
      self.assertEqual(415, response['status_code'])



  def test_06_sources_wait_for_running_update(self):
    orchestrator = self.make_orchestrator()

    self.lock.acquire()
    try:
      responses = [
          orchestrator.update_os_source({'source_list': ['deb a b c']}),
          orchestrator.add_application_source(
              {'filename': 'x.list', 'source': ['deb a b c']}),
          orchestrator.remove_application_source({'filename': 'x.list'})]
    finally:
      self.lock.release()

    for response in responses:
      self.assertEqual(500, response['status_code'])
      self.assertIn('another update is in progress', response['error'])
    self.assertEqual([], self.sources_manager.calls)

    # The lock is released again afterwards.
    response = orchestrator.update_os_source({'source_list': ['deb a b c']})
    self.assertEqual(200, response['status_code'])
    self.assertFalse(self.lock.locked())





# Run unit test.
if __name__ == '__main__':
  unittest.main()
