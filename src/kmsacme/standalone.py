"""Standalone http-01 responder backed by a challenge token store."""
import functools
import http.client as http_client
import http.server as BaseHTTPServer
import logging
import socket
import threading
from typing import Any
from typing import Optional
from typing import Tuple

from kmsacme import challenges
from kmsacme import token_store

logger = logging.getLogger(__name__)


class HTTPServer(BaseHTTPServer.HTTPServer):
    """Generic HTTP Server."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.ipv6 = kwargs.pop("ipv6", False)
        if self.ipv6:
            self.address_family = socket.AF_INET6
        else:
            self.address_family = socket.AF_INET
        super().__init__(*args, **kwargs)


class HTTP01Server(HTTPServer):
    """HTTP01 Server.

    Serves whatever the token store holds, so validations published by
    an issuance flow running in another thread or another process (for
    a `.FileTokenStore`) become visible immediately.

    """
    server_version = "kmsacme http-01 responder"
    allow_reuse_address = True

    def __init__(self, server_address: Tuple[str, int],
                 store: token_store.ChallengeTokenStore,
                 ipv6: bool = False, timeout: int = 30) -> None:
        super().__init__(
            server_address, HTTP01RequestHandler.partial_init(
                store=store, timeout=timeout), ipv6=ipv6)
        self.store = store
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        """Port the server is bound to, useful when binding to port 0."""
        return self.socket.getsockname()[1]

    def start(self) -> None:
        """Serve in a background thread."""
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)
        self._thread.start()
        logger.debug("Serving http-01 validations on port %s", self.port)

    def stop(self) -> None:
        """Stop serving and release the socket."""
        self.shutdown()
        self.server_close()
        if self._thread is not None:
            self._thread.join()
            self._thread = None


class HTTP01RequestHandler(BaseHTTPServer.BaseHTTPRequestHandler):
    """HTTP01 challenge handler.

    Adheres to the stdlib's `socketserver.BaseRequestHandler` interface.

    :ivar .ChallengeTokenStore store: Source of validations.

    """
    PATH_PREFIX = "/" + challenges.HTTP01.URI_ROOT_PATH + "/"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.store = kwargs.pop("store")
        self._timeout = kwargs.pop('timeout', 30)
        super().__init__(*args, **kwargs)

    @property
    def timeout(self) -> int:  # type: ignore[override]
        """
        The default timeout this server should apply to requests.
        :return: timeout to apply
        :rtype: int
        """
        return self._timeout

    def log_message(self, format: str, *args: Any) -> None:  # pylint: disable=redefined-builtin
        """Log arbitrary message."""
        logger.debug("%s - - %s", self.client_address[0], format % args)

    def do_GET(self) -> None:  # pylint: disable=invalid-name,missing-function-docstring
        if self.path.startswith(self.PATH_PREFIX):
            self.handle_validation(self.path[len(self.PATH_PREFIX):])
        else:
            self.handle_404()

    def handle_404(self) -> None:
        """Handler 404 Not Found errors."""
        self.send_response(http_client.NOT_FOUND, message="Not Found")
        self.send_header("Content-type", "text/plain")
        self.end_headers()
        self.wfile.write(b"404")

    def handle_validation(self, token: str) -> None:
        """Serve the validation stored under ``token``."""
        validation = None
        if token not in ('', '.') and '/' not in token and '..' not in token:
            validation = self.store.get(token)
        if validation is None:
            self.log_message("%s does not correspond to any resource. ignoring",
                             self.path)
            self.handle_404()
            return
        self.log_message("Serving HTTP01 with token %r", token)
        body = validation.encode()
        self.send_response(http_client.OK)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    @classmethod
    def partial_init(cls, store: token_store.ChallengeTokenStore,
                     timeout: int) -> 'functools.partial[HTTP01RequestHandler]':
        """Partially initialize this handler.

        This is useful because `socketserver.BaseServer` takes
        uninitialized handler and initializes it with the current
        request.

        """
        return functools.partial(cls, store=store, timeout=timeout)
