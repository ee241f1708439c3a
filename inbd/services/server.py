"""
<Program Name>
  server.py

<Purpose>
  The daemon's listener: XML-RPC over HTTP, inside mutually authenticated
  TLS, on a UNIX domain socket.

  Both ends present certificates signed by the local CA (see inbd.pki); a
  client without one is dropped during the handshake. The socket is created
  with mode 0600 (umask 0177), then handed to root:inbc with mode 0660, so
  only members of the inbc group can connect.

  Each connection is served in its own thread; the TLS handshake happens in
  that thread, so a slow client does not hold up the others.
"""
import inbd

import os
import grp
import ssl
import socket
import socketserver
import xmlrpc.server

log = inbd.logging.getLogger('inbd.server')
log.setLevel(inbd.logging.DEBUG)

SOCKET_UMASK = 0o177
SOCKET_PERM = 0o660
HANDSHAKE_TIMEOUT_SECONDS = 30





# Restrict requests to a particular path.
# Must specify RPC2 here for the XML-RPC interface to work.
class RequestHandler(xmlrpc.server.SimpleXMLRPCRequestHandler):
  rpc_paths = ('/RPC2',)

  def address_string(self):
    # UNIX socket peers have no address.
    return 'unix-socket-peer'





def server_ssl_context(cert_path, key_path, ca_path):
  """
  <Purpose>
    Build the TLS context of the listener: the daemon's certificate and key,
    and a trust store holding only the local CA. Client certificates are
    required.

  <Exceptions>
    inbd.TLSSetupError if the certificates or key cannot be loaded.
  """
  try:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_cert_chain(cert_path, key_path)
    context.load_verify_locations(cafile=ca_path)
  except (ssl.SSLError, OSError) as e:
    raise inbd.TLSSetupError('failed to set up TLS with ' + cert_path + ': ' +
        str(e)) from e
  return context



def inbc_group_id(group_name=inbd.INBC_GROUP):
  try:
    return grp.getgrnam(group_name).gr_gid
  except KeyError as e:
    raise inbd.ListenError(
        'could not find group ' + repr(group_name)) from e





class UnixTLSXMLRPCServer(socketserver.ThreadingMixIn,
    xmlrpc.server.SimpleXMLRPCServer):
  """
  <Purpose>
    SimpleXMLRPCServer bound to a UNIX domain socket, serving each connection
    in a thread after a TLS handshake.

    Construction does not bind; call listen().

  <Fields>

    self.socket_path
      Where the socket is created.

    self.ssl_context
      ssl.SSLContext used for every connection (see server_ssl_context()).

    self.group
      Name of the group given access to the socket, or None to leave the
      socket's ownership alone.
  """

  address_family = socket.AF_UNIX
  daemon_threads = True

  def __init__(self, socket_path, ssl_context, dispatcher,
      group=inbd.INBC_GROUP):

    self.socket_path = socket_path
    self.ssl_context = ssl_context
    self.group = group

    xmlrpc.server.SimpleXMLRPCServer.__init__(self, socket_path,
        requestHandler=RequestHandler, logRequests=False,
        bind_and_activate=False)

    self.register_instance(dispatcher)


  def remove_stale_socket(self):
    if not os.path.lexists(self.socket_path):
      return
    try:
      os.remove(self.socket_path)
    except OSError as e:
      raise inbd.RemoveSocketError('error removing socket ' +
          self.socket_path + ': ' + str(e)) from e
    log.info('Removed stale socket ' + self.socket_path)


  def listen(self):
    """
    <Purpose>
      Create the socket and start listening.

    <Exceptions>
      inbd.RemoveSocketError if a stale socket cannot be removed.
      inbd.ListenError if the socket cannot be bound or its ownership and
      mode cannot be set.

    <Side Effects>
      The process umask is 0177 while the socket is bound and is then
      restored.
    """
    self.remove_stale_socket()

    old_umask = os.umask(SOCKET_UMASK)
    try:
      self.server_bind()
      self.server_activate()
    except OSError as e:
      self.socket.close()
      raise inbd.ListenError('error listening on socket ' +
          self.socket_path + ': ' + str(e)) from e
    finally:
      os.umask(old_umask)

    try:
      if self.group is not None:
        os.chown(self.socket_path, 0, inbc_group_id(self.group))
      os.chmod(self.socket_path, SOCKET_PERM)
    except OSError as e:
      self.server_close()
      raise inbd.ListenError('could not set ownership of socket ' +
          self.socket_path + ': ' + str(e)) from e
    except inbd.ListenError:
      self.server_close()
      raise

    log.info('Server listening on ' + self.socket_path)


  def finish_request(self, request, client_address):
    request.settimeout(HANDSHAKE_TIMEOUT_SECONDS)
    try:
      connection = self.ssl_context.wrap_socket(request, server_side=True)
    except (ssl.SSLError, OSError) as e:
      log.warning('TLS handshake failed; dropping connection: ' + str(e))
      return

    try:
      connection.settimeout(None)
      self.RequestHandlerClass(connection, client_address, self)
    finally:
      connection.close()


  def server_close(self):
    xmlrpc.server.SimpleXMLRPCServer.server_close(self)
    try:
      if os.path.lexists(self.socket_path):
        os.remove(self.socket_path)
    except OSError as e:
      log.warning('Unable to remove socket ' + self.socket_path + ': ' +
          str(e))
