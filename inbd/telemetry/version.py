"""
<Program Name>
  version.py

<Purpose>
  Version section of the telemetry. GIT_COMMIT and BUILD_DATE are replaced at
  packaging time; in a development tree they stay at their defaults.
"""
import inbd

import datetime
import importlib.metadata

import iso8601

GIT_COMMIT = 'unknown'
BUILD_DATE = ''




def get_package_version():
  try:
    return importlib.metadata.version('inbd')
  except importlib.metadata.PackageNotFoundError:
    return inbd.__version__



def get_version_info():
  """
  Return {version, inbm_version_commit, build_date, git_commit}. The build
  date is an ISO 8601 string; if BUILD_DATE is unset or unparseable, the
  current time is reported instead.
  """
  try:
    build_date = iso8601.parse_date(BUILD_DATE)
  except iso8601.ParseError:
    build_date = datetime.datetime.now(datetime.timezone.utc)

  return {
      'version': get_package_version(),
      'inbm_version_commit': GIT_COMMIT,
      'build_date': build_date.isoformat(),
      'git_commit': GIT_COMMIT}
