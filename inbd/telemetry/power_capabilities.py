"""
<Program Name>
  power_capabilities.py

<Purpose>
  Which power actions the host supports. Shutdown and reboot always are;
  suspend and hibernate are taken from /sys/power/state.
"""
from inbd.telemetry import read_kernel_text

import json

POWER_STATE_PATH = '/sys/power/state'




def get_power_capabilities(fileio):
  states = read_kernel_text(fileio, POWER_STATE_PATH).split()
  capabilities = {
      'shutdown': True,
      'reboot': True,
      'suspend': 'mem' in states or 'standby' in states,
      'hibernate': 'disk' in states}
  capabilities['capabilities_json'] = json.dumps(capabilities, sort_keys=True)
  return capabilities
