"""
<Program Name>
  updaters/__init__.py

<Purpose>
  The update orchestrators: firmware (firmware.py, with the platform registry
  in fw_registry.py) and OS / system software (os_updater.py, ubuntu.py,
  sources.py).
"""
