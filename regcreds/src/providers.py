from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from regcreds.src.pullsecret import AuthToken, SecretEncoding

LOGGER = logging.getLogger(__name__)

ASSUME_ROLE_SESSION_NAME = "regcreds-refresher"


class TokenGenerationError(RuntimeError):
    """Raised when a token source cannot produce registry tokens."""


@dataclass(frozen=True)
class TokenProvider:
    """A named source of registry credentials.

    ``generate`` is all-or-nothing: it returns every token for the call or
    raises.  ``encoding`` selects the pull secret wire format and ``name``
    doubles as the secret name written to each namespace.
    """

    name: str
    encoding: SecretEncoding
    generate: Callable[[], list[AuthToken]]


def _session_credentials(region: str, role_arn: str) -> dict[str, str]:
    sts = boto3.client("sts", region_name=region)
    response = sts.assume_role(RoleArn=role_arn, RoleSessionName=ASSUME_ROLE_SESSION_NAME)
    credentials = response["Credentials"]
    return {
        "aws_access_key_id": credentials["AccessKeyId"],
        "aws_secret_access_key": credentials["SecretAccessKey"],
        "aws_session_token": credentials["SessionToken"],
    }


def build_ecr_client(region: str, assume_role: str = "") -> Any:
    """Return a boto3 ECR client, assuming *assume_role* first when it is set."""
    if assume_role:
        return boto3.client("ecr", region_name=region, **_session_credentials(region, assume_role))
    return boto3.client("ecr", region_name=region)


class EcrTokenSource:
    """Fetches ECR authorization tokens for a set of registry account ids.

    A new client is built for every call so assumed-role credentials are
    always fresh; nothing is cached between refresh cycles.
    """

    def __init__(
        self,
        region: str,
        account_ids: Sequence[str] = ("",),
        assume_role: str = "",
        client_factory: Callable[[str, str], Any] = build_ecr_client,
    ) -> None:
        self.region = region
        self.account_ids = list(account_ids)
        self.assume_role = assume_role
        self.client_factory = client_factory

    def _request_params(self) -> dict[str, Any]:
        registry_ids = [account_id for account_id in self.account_ids if account_id]
        if not registry_ids:
            return {}
        return {"registryIds": registry_ids}

    def generate(self) -> list[AuthToken]:
        try:
            ecr = self.client_factory(self.region, self.assume_role)
            response = ecr.get_authorization_token(**self._request_params())
        except (BotoCoreError, ClientError) as exc:
            accounts = ",".join(filter(None, self.account_ids)) or "default"
            LOGGER.warning(
                "ECR authorization token request failed in %s for account(s) %s: %s",
                self.region,
                accounts,
                exc,
            )
            raise TokenGenerationError(
                f"could not get ECR authorization token in region {self.region} "
                f"for account(s) {accounts}: {exc}"
            ) from exc

        tokens = []
        for auth in response.get("authorizationData", []):
            try:
                tokens.append(
                    AuthToken(
                        access_token=auth["authorizationToken"],
                        endpoint=auth["proxyEndpoint"],
                    )
                )
            except KeyError as exc:
                raise TokenGenerationError(
                    f"ECR authorization data is missing field {exc.args[0]!r}"
                ) from exc
        return tokens


def default_providers(secret_name: str, source: EcrTokenSource) -> dict[str, TokenProvider]:
    """Return the registered providers keyed by name, in registration order."""
    ecr = TokenProvider(
        name=secret_name,
        encoding=SecretEncoding.JSON,
        generate=source.generate,
    )
    return {ecr.name: ecr}
