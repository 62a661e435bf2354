"""Cloud resolution from request headers.

Clients name the provider in ``X-Cloud-Provider``, optionally the region in
``X-Cloud-Region``, and pass credentials in ``X-Cloud-Credentials`` as
base64-encoded JSON of the provider's credential fields, e.g. for AWS:

    {"access_key_id": "...", "secret_access_key": "...", "session_token": null}

Without ``X-Cloud-Credentials`` the provider SDK discovers credentials from
the server's own environment.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping

import pydantic
from pydantic import TypeAdapter

from stratus.constants import Provider
from stratus.core.exceptions import ValidationError
from stratus.task.cloud import (
    AWSCredentials,
    AzureCredentials,
    Cloud,
    Credentials,
    GCPCredentials,
    KubernetesCredentials,
    Timeouts,
)

PROVIDER_HEADER = "X-Cloud-Provider"
REGION_HEADER = "X-Cloud-Region"
CREDENTIALS_HEADER = "X-Cloud-Credentials"

DEFAULT_REGION = "us-east"

_CREDENTIAL_TYPES: dict[Provider, type] = {
    Provider.AWS: AWSCredentials,
    Provider.GCP: GCPCredentials,
    Provider.AZ: AzureCredentials,
    Provider.K8S: KubernetesCredentials,
}


def parse_credentials(provider: Provider, encoded: str) -> Credentials:
    """Decode base64 JSON into the provider's credential dataclass."""
    try:
        payload = json.loads(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"{CREDENTIALS_HEADER} must be base64-encoded JSON") from e

    try:
        return TypeAdapter(_CREDENTIAL_TYPES[provider]).validate_python(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(f"invalid {provider} credentials: {e}") from e


def cloud_from_headers(
    headers: Mapping[str, str],
    *,
    timeouts: Timeouts | None = None,
) -> Cloud:
    """Build the target Cloud of a request.

    Raises:
        ValidationError: Missing or unknown provider, or malformed credentials.
    """
    provider_ref = headers.get(PROVIDER_HEADER)
    if not provider_ref:
        raise ValidationError(f"missing {PROVIDER_HEADER} header")
    try:
        provider = Provider(provider_ref.lower())
    except ValueError:
        raise ValidationError(
            f"unknown provider {provider_ref!r}; valid: {', '.join(p.value for p in Provider)}"
        ) from None

    encoded = headers.get(CREDENTIALS_HEADER)
    credentials = parse_credentials(provider, encoded) if encoded else None

    return Cloud(
        provider=provider,
        region=headers.get(REGION_HEADER) or DEFAULT_REGION,
        credentials=credentials,
        timeouts=timeouts or Timeouts(),
    )
