"""
Scoped secret acquisition.

A SecretScope resolves a stage's secrets on entry and erases every trace of
them on exit, whether the stage succeeded or raised.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from contextcore_relay.credentials.resolvers import ResolvedSecret, SecretResolver
from contextcore_relay.models import SecretRef, SecretShape

logger = logging.getLogger(__name__)

MASK = "****"


def _text_fragments(content: bytes) -> List[str]:
    """Whole text and each non-blank line of a file secret; nothing for binary content."""
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        return []
    lines = [line.strip() for line in text.splitlines()]
    return [text.strip(), *(line for line in lines if line)]


class SecretScope:
    """
    Context manager binding resolved secrets to template variables.

    Bindings per reference with binding name ``VAR``:

    - string: ``VAR``
    - username/password: ``VAR_USR``, ``VAR_PSW`` and ``VAR`` as ``user:password``
    - file: ``VAR`` is the path of a private temporary file
    """

    def __init__(self, refs: Sequence[SecretRef], resolver: SecretResolver) -> None:
        self.refs = tuple(refs)
        self.resolver = resolver
        self._bindings: Dict[str, str] = {}
        self._sensitive: List[str] = []
        self._files: List[Path] = []
        self._tmpdir: Optional[Path] = None
        self.active = False

    def __enter__(self) -> "SecretScope":
        self.acquire()
        return self

    def __exit__(self, *args) -> None:
        self.release()

    @property
    def bindings(self) -> Dict[str, str]:
        """Copy of the current bindings (empty once released)."""
        return dict(self._bindings)

    @property
    def files(self) -> List[Path]:
        """Paths of materialized file secrets."""
        return list(self._files)

    def acquire(self) -> None:
        """Resolve every declared reference. Partially acquired state is released on error."""
        self.active = True
        try:
            for ref in self.refs:
                self._bind(ref, self.resolver.resolve(ref))
        except BaseException:
            self.release()
            raise
        if self.refs:
            logger.debug(f"Acquired {len(self.refs)} secret(s): {', '.join(r.name for r in self.refs)}")

    def _bind(self, ref: SecretRef, secret: ResolvedSecret) -> None:
        var = ref.binding
        if secret.shape == SecretShape.USERNAME_PASSWORD:
            self._bindings[f"{var}_USR"] = secret.username or ""
            self._bindings[f"{var}_PSW"] = secret.password or ""
            self._bindings[var] = f"{secret.username}:{secret.password}"
            self._sensitive.extend([secret.password or "", self._bindings[var]])
        elif secret.shape == SecretShape.FILE:
            content = secret.content or b""
            self._bindings[var] = str(self._materialize(ref, content))
            self._sensitive.extend(_text_fragments(content))
        else:
            self._bindings[var] = secret.text or ""
            self._sensitive.append(secret.text or "")

    def _materialize(self, ref: SecretRef, content: bytes) -> Path:
        if self._tmpdir is None:
            self._tmpdir = Path(tempfile.mkdtemp(prefix="relay-secret-"))
        path = self._tmpdir / f"{len(self._files)}-{ref.binding.lower()}"
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        self._files.append(path)
        return path

    def release(self) -> None:
        """Erase materialized files and forget every value. Safe to call twice."""
        for path in self._files:
            try:
                size = path.stat().st_size
                with open(path, "r+b") as f:
                    f.write(b"\0" * size)
                    f.flush()
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not scrub secret file {path}: {e}")
        if self._tmpdir is not None:
            shutil.rmtree(self._tmpdir, ignore_errors=True)
            self._tmpdir = None
        self._files.clear()
        self._bindings.clear()
        self._sensitive.clear()
        self.active = False

    def mask(self, text: str) -> str:
        """Replace every bound secret value in ``text`` with ``****``."""
        if not text:
            return text
        # Longest first so a password inside "user:password" is not half-masked.
        for value in sorted(set(self._sensitive), key=len, reverse=True):
            if value:
                text = text.replace(value, MASK)
        return text
