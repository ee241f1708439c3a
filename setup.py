"""
<Program Name>
  setup.py

<Purpose>
  BUILD SOURCE DISTRIBUTION

  The following shell command generates an inbd source archive that can be
  distributed to other users.  The packaged source is saved to the 'dist'
  folder in the current directory.

  $ python setup.py sdist


  INSTALLATION OPTIONS

  pip - installing and managing Python packages (recommended):

  # Installing from local source archive.
  $ pip install <path to archive>

  # Or from the root directory of the unpacked archive.
  $ pip install .


  Installation puts an 'inbd' command on the PATH, which starts the daemon:

  $ inbd -s /var/run/inbd.sock

  The daemon expects to run as root, with a group named 'inbc' whose members
  may talk to it, and with /etc/intel_manageability.conf in place (a sample
  is in samples/).
"""
import os
from setuptools import setup
from setuptools import find_packages

if os.path.exists('README.md'):
  with open('README.md') as file_object:
    long_description = file_object.read()
else:
  long_description = 'In-band management daemon: firmware and OS updates, ' + \
      'configuration and telemetry over a local mTLS socket'


setup(
  name = 'inbd',
  version = '1.0.0',
  description = 'In-band management daemon for edge devices',
  long_description = long_description,
  keywords = 'manageability firmware update apt ota daemon edge device ' + \
      'telemetry configuration',
  classifiers = [
    'Development Status :: 3 - Alpha',
    'Intended Audience :: System Administrators',
    'License :: OSI Approved :: Apache Software License',
    'Natural Language :: English',
    'Operating System :: POSIX :: Linux',
    'Programming Language :: Python',
    'Programming Language :: Python :: 3',
    'Programming Language :: Python :: Implementation :: CPython',
    'Topic :: Security',
    'Topic :: System :: Systems Administration'
  ],
  python_requires = '>=3.8',
  install_requires = ['iso8601', 'tuf>=6.0', 'canonicaljson', 'jsonschema',
      'cryptography>=40'],
  test_suite="tests.runtests",
  packages = find_packages(exclude=['tests']),
  entry_points = {'console_scripts': ['inbd = inbd.daemon:main']},
  scripts = []
)
