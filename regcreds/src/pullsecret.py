from __future__ import annotations

import enum
import json
from collections.abc import Sequence
from dataclasses import dataclass, field

DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"
DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CFG_KEY = ".dockercfg"
DOCKER_CFG_TYPE = "kubernetes.io/dockercfg"

LEGACY_USERNAME = "oauth2accesstoken"
REGISTRY_EMAIL = "none"
_DOCKER_CFG_TEMPLATE = (
    '{{"{endpoint}":{{"username":"' + LEGACY_USERNAME + '","password":"{token}",'
    '"email":"' + REGISTRY_EMAIL + '"}}}}'
)


class MaterializationError(RuntimeError):
    """Raised when tokens cannot be encoded into a pull secret payload."""


class SecretEncoding(enum.Enum):
    JSON = "json"
    LEGACY = "legacy"


@dataclass(frozen=True)
class AuthToken:
    """A registry access token and the endpoint it authenticates against."""

    access_token: str
    endpoint: str

    def __repr__(self) -> str:
        return f"AuthToken(access_token='[REDACTED]', endpoint={self.endpoint!r})"


@dataclass(frozen=True)
class SecretPayload:
    """Materialized pull secret ready to be written to a namespace.

    ``data`` maps the secret key (``.dockerconfigjson`` or ``.dockercfg``)
    to raw bytes.  Both ``data`` and ``type_tag`` are empty when the legacy
    encoding was asked for anything other than exactly one token.
    """

    name: str
    encoding: SecretEncoding
    data: dict[str, bytes] = field(default_factory=dict)
    type_tag: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.data


def _docker_config_json(tokens: Sequence[AuthToken]) -> bytes:
    auths = {
        token.endpoint: {"auth": token.access_token, "email": REGISTRY_EMAIL}
        for token in tokens
    }
    # An empty "auths" map is omitted, giving "{}" for zero tokens.
    document: dict[str, object] = {"auths": auths} if auths else {}
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def materialize_secret(
    tokens: Sequence[AuthToken],
    encoding: SecretEncoding,
    secret_name: str,
) -> SecretPayload:
    """Package *tokens* as a pull secret named *secret_name*.

    The JSON encoding always yields a payload, even for zero tokens.  The
    legacy single-registry encoding only fills the payload when exactly one
    token is given; otherwise the returned secret carries no data.
    """
    if encoding is SecretEncoding.JSON:
        try:
            config_json = _docker_config_json(tokens)
        except (TypeError, ValueError) as exc:
            raise MaterializationError(
                f"could not encode {DOCKER_CONFIG_JSON_KEY} for secret {secret_name}: {exc}"
            ) from exc
        return SecretPayload(
            name=secret_name,
            encoding=encoding,
            data={DOCKER_CONFIG_JSON_KEY: config_json},
            type_tag=DOCKER_CONFIG_JSON_TYPE,
        )

    if encoding is SecretEncoding.LEGACY:
        if len(tokens) != 1:
            return SecretPayload(name=secret_name, encoding=encoding)
        token = tokens[0]
        try:
            docker_cfg = _DOCKER_CFG_TEMPLATE.format(
                endpoint=token.endpoint, token=token.access_token
            ).encode("utf-8")
        except (AttributeError, UnicodeEncodeError) as exc:
            raise MaterializationError(
                f"could not encode {DOCKER_CFG_KEY} for secret {secret_name}: {exc}"
            ) from exc
        return SecretPayload(
            name=secret_name,
            encoding=encoding,
            data={DOCKER_CFG_KEY: docker_cfg},
            type_tag=DOCKER_CFG_TYPE,
        )

    raise MaterializationError(f"unsupported secret encoding {encoding!r} for {secret_name}")
