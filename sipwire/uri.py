"""SIP URI value type."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field


def _params_to_string(params: dict[str, str], sep: str) -> str:
    return sep.join(f"{key}={value}" if value else key for key, value in params.items())


@dataclass
class Uri:
    """Parsed form of ``sip:user:password@host:port;uri-parameters?headers``."""

    scheme: str = ""
    wildcard: bool = False
    hierarchical_slashes: bool = False
    user: str = ""
    password: str = ""
    host: str = ""
    port: int = 0
    uri_params: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        parts = [self.scheme or "sip", ":"]
        if self.hierarchical_slashes:
            parts.append("//")
        if self.user:
            parts.append(self.user)
            if self.password:
                parts.append(":" + self.password)
            parts.append("@")
        parts.append(self.host)
        if self.port > 0:
            parts.append(f":{self.port}")
        if self.uri_params:
            parts.append(";" + _params_to_string(self.uri_params, ";"))
        if self.headers:
            parts.append("?" + _params_to_string(self.headers, "&"))
        return "".join(parts)

    def clone(self) -> Uri:
        """Return an independent copy."""
        return copy.deepcopy(self)

    def is_encrypted(self) -> bool:
        """True for a SIPS URI."""
        return self.scheme == "sips"

    def endpoint(self) -> str:
        """``user@host[:port]``."""
        addr = f"{self.user}@{self.host}"
        if self.port > 0:
            addr += f":{self.port}"
        return addr

    def addr(self) -> str:
        """URI without parameters and headers: ``sip[s]:user@host[:port]``."""
        if self.is_encrypted():
            return "sips:" + self.endpoint()
        return (self.scheme or "sip") + ":" + self.endpoint()

    def host_port(self) -> str:
        """``host:port``."""
        return f"{self.host}:{self.port}"