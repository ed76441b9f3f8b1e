"""
Storage URL parsing.

Accepted forms::

    https://<account>.blob.core.windows.net/<container>/<blob path>
    https://<account>.file.core.windows.net/<share>/<file path>

Blob and file paths may be nested; they are kept intact (URL-decoded).
The endpoint suffix must be one of ``storage.endpoint_suffixes`` (by default
the public, China and US Government clouds) and the account name must follow
Azure's naming rule.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import quote, unquote, urlsplit

from aiplabels.exceptions import InvalidLocatorError
from aiplabels.server.config import AZURE_ENDPOINT_SUFFIXES

_SERVICES = {"blob", "file"}

_ACCOUNT_NAME = re.compile(r"^[a-z0-9]{3,24}$")


@dataclass(frozen=True)
class StorageLocator:
    """A parsed storage URL."""

    account: str
    service: str  # "blob" or "file"
    container: str  # container or share name
    name: str  # blob name or file path within the share
    host: str

    @property
    def account_url(self) -> str:
        return f"https://{self.host}"

    @property
    def file_name(self) -> str:
        """Last path segment, used as the handler's display name."""
        return self.name.rsplit("/", 1)[-1]

    @property
    def url(self) -> str:
        """Decoded URL of this location."""
        return f"{self.account_url}/{self.container}/{self.name}"

    @property
    def encoded_url(self) -> str:
        return f"{self.account_url}/{quote(self.container)}/{quote(self.name)}"

    def with_container(self, container: str, name: str | None = None) -> StorageLocator:
        """Same account, different container (and optionally name)."""
        return StorageLocator(
            account=self.account,
            service=self.service,
            container=container,
            name=name if name is not None else self.name,
            host=self.host,
        )

    @classmethod
    def parse(
        cls, url: str, endpoint_suffixes: Iterable[str] = AZURE_ENDPOINT_SUFFIXES
    ) -> StorageLocator:
        """Split a storage URL into its named components.

        Raises:
            InvalidLocatorError: not https, unknown host, or container / name
                missing.
        """
        if not url or not url.strip():
            raise InvalidLocatorError("Storage URL is empty", url=url, operation="parse")

        parts = urlsplit(url.strip())
        if parts.scheme.lower() != "https":
            raise InvalidLocatorError("Storage URL must use https", url=url, operation="parse")

        host = (parts.hostname or "").lower()
        if not host:
            raise InvalidLocatorError("Storage URL has no host", url=url, operation="parse")
        try:
            port = parts.port
        except ValueError:
            port = -1
        if port not in (None, 443) or parts.username or parts.password:
            raise InvalidLocatorError(
                "Storage URL must not carry credentials or a custom port", url=url, operation="parse"
            )

        allowed = {suffix.lower().strip(".") for suffix in endpoint_suffixes}
        account, _, suffix = host.partition(".")
        service, _, endpoint = suffix.partition(".")
        if service not in _SERVICES or endpoint not in allowed:
            raise InvalidLocatorError(
                "Storage URL host is not a blob or file endpoint", url=url, operation="parse"
            )
        if not _ACCOUNT_NAME.match(account):
            raise InvalidLocatorError("Storage account name is invalid", url=url, operation="parse")

        path = unquote(parts.path).lstrip("/")
        container, _, name = path.partition("/")
        if not container:
            raise InvalidLocatorError("Storage URL has no container", url=url, operation="parse")
        if not name or name.endswith("/"):
            raise InvalidLocatorError("Storage URL has no blob name", url=url, operation="parse")

        return cls(
            account=account,
            service=service,
            container=container,
            name=name,
            host=host,
        )
