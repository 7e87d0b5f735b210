from typing import Any, Mapping

from loguru import logger
from yarl import URL

from provisioning_client.errors import ConfigurationError
from provisioning_client.models import Credential


def create_credential(token: str, base_url: str) -> Credential:
    """Validates the token and endpoint locally and returns an immutable Credential"""
    if not token or not token.strip():
        raise ConfigurationError("missing bearer token")
    if token != token.strip():
        raise ConfigurationError("bearer token has leading or trailing whitespace")
    if not base_url or not base_url.strip():
        raise ConfigurationError("missing control plane base URL")

    try:
        url = URL(base_url.strip())
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"malformed control plane base URL: {e}") from e

    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigurationError(
            "control plane base URL must be absolute with an http(s) scheme and a host"
        )

    base = str(url.with_query(None).with_fragment(None)).rstrip("/")
    logger.debug(f"Resolved control plane endpoint {base}")
    return Credential(token=token, base_url=base)


def resolve_credential(config: Mapping[str, Any]) -> Credential:
    """Builds a Credential from a {token, base_url} configuration bundle"""
    return create_credential(
        str(config.get("token") or ""), str(config.get("base_url") or "")
    )
