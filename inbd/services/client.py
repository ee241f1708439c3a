"""
<Program Name>
  client.py

<Purpose>
  Client side of the daemon's transport: XML-RPC calls over TLS on the
  daemon's UNIX socket, authenticated with a certificate signed by the local
  CA (by default the inbc certificate written by inbd.pki).

  Usage:

    proxy = inbd.services.client.connect()
    response = proxy.Query({'option': 'QUERY_OPTION_HARDWARE'})
"""
import inbd

import os
import ssl
import socket
import http.client
import xmlrpc.client

log = inbd.logging.getLogger('inbd.client')
log.setLevel(inbd.logging.DEBUG)

# The service certificates are issued for localhost.
SERVER_HOSTNAME = 'localhost'





def client_ssl_context(cert_path, key_path, ca_path):
  """
  Build the TLS context of a client: its certificate and key, and the local
  CA as the only trust anchor. Raises inbd.TLSSetupError on failure.
  """
  try:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(cert_path, key_path)
    context.load_verify_locations(cafile=ca_path)
  except (ssl.SSLError, OSError) as e:
    raise inbd.TLSSetupError('failed to set up TLS with ' + cert_path + ': ' +
        str(e)) from e
  return context





class UnixTLSConnection(http.client.HTTPConnection):
  """HTTPConnection that talks TLS over a UNIX domain socket."""

  def __init__(self, socket_path, ssl_context, timeout=None):
    http.client.HTTPConnection.__init__(self, SERVER_HOSTNAME)
    self.socket_path = socket_path
    self.ssl_context = ssl_context
    self.socket_timeout = timeout


  def connect(self):
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
      sock.settimeout(self.socket_timeout)
      sock.connect(self.socket_path)
      self.sock = self.ssl_context.wrap_socket(
          sock, server_hostname=SERVER_HOSTNAME)
    except ssl.SSLError as e:
      sock.close()
      raise inbd.TLSHandshakeError('TLS handshake with ' + self.socket_path +
          ' failed: ' + str(e)) from e
    except OSError:
      sock.close()
      raise





class UnixTLSTransport(xmlrpc.client.Transport):
  """xmlrpc.client transport using UnixTLSConnection."""

  def __init__(self, socket_path, ssl_context, timeout=None):
    xmlrpc.client.Transport.__init__(self)
    self.socket_path = socket_path
    self.ssl_context = ssl_context
    self.timeout = timeout


  def make_connection(self, host):
    if self._connection and host == self._connection[0]:
      return self._connection[1]
    self._connection = host, UnixTLSConnection(
        self.socket_path, self.ssl_context, self.timeout)
    return self._connection[1]



def connect(socket_path=inbd.DEFAULT_SOCKET_PATH, name='inbc',
    secret_dir=inbd.DEFAULT_SECRET_DIR, timeout=None, ssl_context=None):
  """
  <Purpose>
    Return an xmlrpc.client.ServerProxy for the daemon at socket_path.

  <Arguments>
    name
      The service whose certificate and key (<secret_dir>/<name>.crt and
      .key) identify the client.

    ssl_context
      A ready context; if given, name and secret_dir are not used.

  <Exceptions>
    inbd.TLSSetupError if the certificates cannot be loaded. Connection
    errors surface on the first call.
  """
  if ssl_context is None:
    ssl_context = client_ssl_context(
        os.path.join(secret_dir, name + '.crt'),
        os.path.join(secret_dir, name + '.key'),
        os.path.join(secret_dir, 'ca.crt'))

  transport = UnixTLSTransport(socket_path, ssl_context, timeout)
  return xmlrpc.client.ServerProxy('https://' + SERVER_HOSTNAME + '/RPC2',
      transport=transport)
