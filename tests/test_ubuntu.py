"""
<Program Name>
  test_ubuntu.py

<Purpose>
  Unit testing for inbd/updaters/ubuntu.py, with a fake executor and a fake
  /proc/mounts.
"""
import inbd
import inbd.executor
import inbd.safe_io
import inbd.updaters.ubuntu as ubuntu

import unittest
import os
import json
import shutil
import tempfile

TEMP_DIR = None

BTRFS_MOUNTS = b'sysfs /sys sysfs rw 0 0\n/dev/sda2 / btrfs rw,relatime 0 0\n'
EXT4_MOUNTS = b'sysfs /sys sysfs rw 0 0\n/dev/sda2 / ext4 rw,relatime 0 0\n'

UPGRADE_OUTPUT = b'''Reading package lists...
The following packages will be upgraded:
  libssl3 openssl
2 upgraded, 0 newly installed, 0 to remove and 0 not upgraded.
Need to get 3,215 kB of archives.
After this operation, 1,024 kB of additional disk space will be used.
Do you want to continue? [Y/n] Abort.
'''

NO_UPGRADE_OUTPUT = b'''Reading package lists...
0 upgraded, 0 newly installed, 0 to remove and 0 not upgraded.
'''



class FakeFileIO(inbd.safe_io.SafeIO):
  """SafeIO whose kernel files come from a dictionary."""

  def __init__(self, kernel_files):
    inbd.safe_io.SafeIO.__init__(self)
    self.kernel_files = kernel_files

  def read_kernel_file(self, path):
    if path not in self.kernel_files:
      raise inbd.FileNotFound('no such file: ' + path)
    return self.kernel_files[path]



class FakeExecutor(object):
  """
  Records commands. responder(argv) returns (stdout, stderr) or raises; by
  default every command succeeds with no output.
  """

  def __init__(self, responder=None):
    self.responder = responder
    self.commands = []
    self.environments = []

  def execute(self, argv, timeout=None, env=None):
    self.commands.append(list(argv))
    self.environments.append(env)
    if self.responder is not None:
      return self.responder(argv)
    return b'', b''



def snapper_responder(snapshot_output=b'12\n', configs=b'rootConfig | /\n',
    snapper_missing=False):

  def respond(argv):
    if argv[0] == inbd.executor.SNAPPER_COMMAND:
      if argv[1] == '--version':
        if snapper_missing:
          raise inbd.CommandFailed('not found', returncode=127)
        return b'snapper 0.10.6\n', b''
      if 'list-configs' in argv:
        return configs, b''
      if 'create' in argv:
        return snapshot_output, b''
    return b'', b''

  return respond



def apt_responder(upgrade_output=UPGRADE_OUTPUT, failing=None):

  def respond(argv):
    if argv[-1] == '--assume-no':
      # apt-get exits non-zero when the prompt is answered 'no'.
      raise inbd.CommandFailed('aborted', returncode=1, stdout=upgrade_output)
    if failing is not None and failing in argv:
      raise inbd.CommandFailed('failed', returncode=100, stderr=b'E: broken')
    return b'', b'W: some warning\n'

  return respond





class TestUbuntuUpdater(unittest.TestCase):
  """
  "unittest"-style test class for the ubuntu.py updater module
  """

  @classmethod
  def setUpClass(cls):
    global TEMP_DIR
    TEMP_DIR = tempfile.mkdtemp(prefix='inbd_test_ubuntu_', dir='/tmp')



  @classmethod
  def tearDownClass(cls):
    shutil.rmtree(TEMP_DIR)



  def setUp(self):
    self.state_file_path = os.path.join(
        TEMP_DIR, 'intel-manageability', 'dispatcher_state')



  def make_updater(self, executor, mounts=BTRFS_MOUNTS, free=10 ** 9):
    fileio = FakeFileIO({ubuntu.MOUNTS_PATH: mounts})
    return ubuntu.UbuntuUpdater(fileio, executor,
        free_space=lambda path: free, state_file_path=self.state_file_path)





  def test_01_parse_update_size(self):
    self.assertEqual((True, 1024 * 1024),
        ubuntu.parse_update_size(UPGRADE_OUTPUT.decode()))
    self.assertEqual((False, 0),
        ubuntu.parse_update_size(NO_UPGRADE_OUTPUT.decode()))
    self.assertEqual((True, 0), ubuntu.parse_update_size(
        'After this operation, 5,120 B disk space will be freed.'))
    self.assertEqual((True, int(1.5 * 1024 * 1024 * 1024)),
        ubuntu.parse_update_size(
        'After this operation, 1.5 GB of additional disk space will be used.'))
    self.assertEqual((True, 300),
        ubuntu.parse_update_size(
        'After this operation, 300 B of additional disk space will be used.'))

    with self.assertRaises(inbd.Error):
      ubuntu.parse_update_size('E: Could not get lock')



  def test_02_commands(self):
    full = ubuntu.full_install_commands([])
    self.assertEqual(['/usr/bin/apt-get', 'update'], full[0])
    self.assertEqual('upgrade', full[-1][-1])
    self.assertIn('--with-new-pkgs', full[-1])

    full = ubuntu.full_install_commands(['vim', 'curl=7.81.0-1'])
    self.assertEqual(['install', 'vim', 'curl=7.81.0-1'], full[-1][-3:])

    no_download = ubuntu.no_download_commands([])
    self.assertEqual('/usr/bin/dpkg', no_download[0][0])
    self.assertNotIn(['/usr/bin/apt-get', 'update'], no_download)

    download_only = ubuntu.download_only_commands(['vim'])
    self.assertIn('--download-only', download_only[-1])

    # Every command is on the executor's allow-list.
    for make_commands in ubuntu.MODE_COMMANDS.values():
      for argv in make_commands(['vim']):
        self.assertIn(argv[0], inbd.executor.ALLOWED_COMMANDS)

    ubuntu.check_package_names(['vim', 'libssl3:amd64', 'g++', 'pkg/jammy'])
    for bad in ['-o', '--allow-unauthenticated', 'a b', '', 'pkg;reboot']:
      with self.assertRaises(inbd.InvalidRequest):
        ubuntu.check_package_names([bad])

    self.assertEqual('btrfs', ubuntu.root_filesystem_type(
        BTRFS_MOUNTS.decode()))
    self.assertEqual('', ubuntu.root_filesystem_type('none /sys sysfs rw 0 0'))



  def test_03_snapshot(self):
    executor = FakeExecutor(snapper_responder())
    updater = self.make_updater(executor)

    self.assertEqual(12, updater.snapshot())

    with open(self.state_file_path) as fileobj:
      self.assertEqual({'restart_reason': 'sota', 'snapshot_number': 12},
          json.load(fileobj))

    self.assertIn(['truncate', '-s', '0', self.state_file_path],
        executor.commands)
    self.assertEqual(['snapper', '-c', 'rootConfig', 'create', '-p',
        '--description', 'sota_update'], executor.commands[-1])
    # The configuration existed, so it was not created.
    self.assertNotIn('create-config', sum(executor.commands, []))

    executor = FakeExecutor(snapper_responder(configs=b''))
    self.make_updater(executor).snapshot()
    self.assertIn(['snapper', '-c', 'rootConfig', 'create-config', '/'],
        executor.commands)



  def test_04_snapshot_preconditions(self):
    executor = FakeExecutor(snapper_responder())
    with self.assertRaises(inbd.PreconditionError):
      self.make_updater(executor, mounts=EXT4_MOUNTS).snapshot()
    self.assertEqual([], executor.commands)

    executor = FakeExecutor(snapper_responder(snapper_missing=True))
    with self.assertRaises(inbd.PreconditionError):
      self.make_updater(executor).snapshot()

    for output in [b'', b'not-a-number\n']:
      executor = FakeExecutor(snapper_responder(snapshot_output=output))
      with self.assertRaises(inbd.Error):
        self.make_updater(executor).snapshot()



  def test_05_update(self):
    executor = FakeExecutor(apt_responder())
    updater = self.make_updater(executor)

    self.assertTrue(updater.update(ubuntu.MODE_FULL, []))

    # The size check, then the commands of the mode, in order.
    self.assertEqual('--assume-no', executor.commands[0][-1])
    self.assertEqual(ubuntu.full_install_commands([]), executor.commands[1:])

    for env in executor.environments:
      self.assertEqual('noninteractive', env['DEBIAN_FRONTEND'])



  def test_06_update_modes_and_errors(self):
    executor = FakeExecutor(apt_responder())
    self.make_updater(executor).update(ubuntu.MODE_DOWNLOAD_ONLY, ['vim'])
    self.assertEqual(ubuntu.download_only_commands(['vim']),
        executor.commands[1:])

    with self.assertRaises(inbd.InvalidRequest):
      self.make_updater(FakeExecutor()).update('sideways', [])

    with self.assertRaises(inbd.InvalidRequest):
      self.make_updater(FakeExecutor()).update(ubuntu.MODE_FULL, ['-y'])

    # Nothing to upgrade and no packages requested.
    executor = FakeExecutor(apt_responder(NO_UPGRADE_OUTPUT))
    self.assertFalse(self.make_updater(executor).update(ubuntu.MODE_FULL, []))
    self.assertEqual(1, len(executor.commands))

    # Requested packages are installed even when nothing is upgradable.
    executor = FakeExecutor(apt_responder(NO_UPGRADE_OUTPUT))
    self.assertTrue(
        self.make_updater(executor).update(ubuntu.MODE_FULL, ['vim']))

    executor = FakeExecutor(apt_responder())
    with self.assertRaises(inbd.InsufficientDiskSpace):
      self.make_updater(executor, free=1000).update(ubuntu.MODE_FULL, [])
    self.assertEqual(1, len(executor.commands))

    executor = FakeExecutor(apt_responder(failing='--configure'))
    with self.assertRaises(inbd.CommandFailed):
      self.make_updater(executor).update(ubuntu.MODE_FULL, [])

    executor = FakeExecutor(apt_responder(b''))
    with self.assertRaises(inbd.Error):
      self.make_updater(executor).update(ubuntu.MODE_FULL, [])





# Run unit test.
if __name__ == '__main__':
  unittest.main()
