"""
Credential boundary.

Provider credentials come from an external service keyed by
``(tenant_id, provider)``. The engine treats them as opaque values and never
logs them.
"""

import os
from typing import Dict, Iterator, Mapping, Optional, Protocol, Tuple


class Credentials(Mapping[str, str]):
    """Read-only credential values whose repr never shows the secrets."""

    def __init__(self, values: Mapping[str, str]):
        self._values = dict(values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Credentials(keys={sorted(self._values)})"

    __str__ = __repr__


class CredentialProvider(Protocol):
    def get_credentials(self, tenant_id: Optional[str], provider: str) -> Credentials:
        """Return credentials for the tenant (or provider-wide when None).

        Raises:
            KeyError: If no credentials are configured
        """
        ...


class EnvCredentialProvider:
    """Reads credentials from environment variables.

    ``USAGE_ENGINE_<PROVIDER>_<TENANT>_<FIELD>`` wins over the provider-wide
    ``USAGE_ENGINE_<PROVIDER>_<FIELD>``.
    """

    def __init__(
        self,
        fields: Mapping[str, Tuple[str, ...]],
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.fields = dict(fields)
        self.environ = environ if environ is not None else os.environ

    @staticmethod
    def _normalize(value: str) -> str:
        return "".join(ch if ch.isalnum() else "_" for ch in value).upper()

    def get_credentials(self, tenant_id: Optional[str], provider: str) -> Credentials:
        if provider not in self.fields:
            raise KeyError(f"No credential fields declared for provider '{provider}'")

        prefix = f"USAGE_ENGINE_{self._normalize(provider)}"
        values: Dict[str, str] = {}
        missing = []
        for field_name in self.fields[provider]:
            suffix = self._normalize(field_name)
            candidates = []
            if tenant_id:
                candidates.append(f"{prefix}_{self._normalize(tenant_id)}_{suffix}")
            candidates.append(f"{prefix}_{suffix}")
            value = next((self.environ[name] for name in candidates if self.environ.get(name)), None)
            if value is None:
                missing.append(field_name)
            else:
                values[field_name] = value

        if missing:
            raise KeyError(f"Credentials for '{provider}' missing fields: {missing}")
        return Credentials(values)


class StaticCredentialProvider:
    """In-memory credentials, for wiring tests and local runs."""

    def __init__(self, credentials: Mapping[Tuple[Optional[str], str], Mapping[str, str]]):
        self._credentials = {key: Credentials(value) for key, value in credentials.items()}

    def get_credentials(self, tenant_id: Optional[str], provider: str) -> Credentials:
        if (tenant_id, provider) in self._credentials:
            return self._credentials[(tenant_id, provider)]
        if (None, provider) in self._credentials:
            return self._credentials[(None, provider)]
        raise KeyError(f"No credentials for tenant '{tenant_id}' and provider '{provider}'")
