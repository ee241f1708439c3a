"""
<Program Name>
  services/__init__.py

<Purpose>
  The daemon's RPC surface: the method table (dispatcher.py), the UNIX socket
  mTLS XML-RPC listener (server.py) and a matching client (client.py).
"""
