"""Challenge token stores.

An issuance flow writes the expected http-01 response under the
challenge token; a separately running responder (see
`kmsacme.standalone`, or any web server pointed at a
`FileTokenStore` directory) reads it back when the CA comes to
validate. Both sides may run concurrently, so every implementation is
safe for concurrent readers and writers.

"""
import abc
import logging
import os
import tempfile
import threading
from typing import Dict
from typing import Optional

logger = logging.getLogger(__name__)


class ChallengeTokenStore(metaclass=abc.ABCMeta):
    """Key-value store of http-01 token to key authorization."""

    @abc.abstractmethod
    def put(self, token: str, value: str) -> None:
        """Publish ``value`` under ``token``, replacing any previous value."""

    @abc.abstractmethod
    def get(self, token: str) -> Optional[str]:
        """Return the value published under ``token``, or ``None``."""

    @abc.abstractmethod
    def delete(self, token: str) -> None:
        """Remove ``token``. Removing an unknown token is not an error."""


class MemoryTokenStore(ChallengeTokenStore):
    """Token store kept in a dict, for a responder in the same process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: Dict[str, str] = {}

    def put(self, token: str, value: str) -> None:
        with self._lock:
            self._tokens[token] = value

    def get(self, token: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(token)

    def delete(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class FileTokenStore(ChallengeTokenStore):
    """Token store backed by one file per token in ``root``.

    ``root`` is typically the ``.well-known/acme-challenge`` directory
    of an existing web server. Files are written to a temporary name and
    renamed into place so readers never observe a partial value.

    """

    def __init__(self, root: str) -> None:
        self.root = root
        os.makedirs(root, exist_ok=True)

    def _path(self, token: str) -> str:
        if not token or token in ('.', '..') or '/' in token or os.sep in token:
            raise ValueError(f'Refusing to use {token!r} as a file name')
        return os.path.join(self.root, token)

    def put(self, token: str, value: str) -> None:
        path = self._path(token)
        logger.debug("Attempting to save validation to %s", path)
        # world-readable, owner-writable so the web server can serve it
        old_umask = os.umask(0o022)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix='.tmp-')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as tmp_file:
                    tmp_file.write(value)
                os.chmod(tmp_path, 0o644)
                os.replace(tmp_path, path)
            except BaseException:
                os.unlink(tmp_path)
                raise
        finally:
            os.umask(old_umask)

    def get(self, token: str) -> Optional[str]:
        try:
            with open(self._path(token), encoding='utf-8') as validation_file:
                return validation_file.read()
        except FileNotFoundError:
            return None

    def delete(self, token: str) -> None:
        path = self._path(token)
        logger.debug("Removing %s", path)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
