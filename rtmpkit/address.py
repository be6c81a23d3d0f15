"""Normalisation of RTMP server addresses."""

from __future__ import annotations

DEFAULT_RTMP_PORT = 1935


class _MissingPortError(ValueError):
    pass


def _split_host_port(hostport: str) -> tuple[str, str]:
    colon = hostport.rfind(":")
    if colon < 0:
        raise _MissingPortError(f"address {hostport}: missing port in address")

    host_start, host_end = 0, 0
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']' in address")
        if end + 1 == len(hostport):
            raise _MissingPortError(f"address {hostport}: missing port in address")
        if end + 1 != colon:
            if hostport[end + 1] == ":":
                raise ValueError(f"address {hostport}: too many colons in address")
            raise _MissingPortError(f"address {hostport}: missing port in address")
        host = hostport[1:end]
        host_start, host_end = 1, end + 1
    else:
        host = hostport[:colon]
        if ":" in host:
            raise ValueError(f"address {hostport}: too many colons in address")

    if "[" in hostport[host_start:]:
        raise ValueError(f"address {hostport}: unexpected '[' in address")
    if "]" in hostport[host_end:]:
        raise ValueError(f"address {hostport}: unexpected ']' in address")

    return host, hostport[colon + 1:]


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def make_valid_addr(addr: str) -> str:
    """Return ``addr`` as host:port, adding the default RTMP port when none is given."""
    try:
        host, port = _split_host_port(addr)
    except _MissingPortError:
        return make_valid_addr(f"{addr}:{DEFAULT_RTMP_PORT}")
    return _join_host_port(host, port)