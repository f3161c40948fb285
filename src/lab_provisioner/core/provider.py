"""Provider connections - credentials and API clients for Proxmox VE and Linode."""

from dataclasses import dataclass
from functools import cached_property
from typing import Self

from linode_api4 import LinodeClient
from proxmoxer import ProxmoxAPI
from pydantic import BaseModel, ConfigDict, SecretStr


class ProxmoxProvider(BaseModel):
    """Connection configuration for a Proxmox VE host.

    Authenticate with an API token (preferred) or a password. For testing,
    use the `from_client` classmethod to inject a client.

    Examples:
        provider = ProxmoxProvider(
            host="pve.home.lab",
            user="root@pam",
            token_name="provisioner",
            token_value=SecretStr("..."),
        )
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    host: str | None = None
    port: int = 8006
    user: str = "root@pam"
    token_name: str | None = None
    token_value: SecretStr | None = None
    password: SecretStr | None = None
    verify_ssl: bool = True
    task_timeout: float = 600.0

    # Injected client (for testing)
    _injected_client: ProxmoxAPI | None = None

    @classmethod
    def from_client(cls, client: ProxmoxAPI, **settings: object) -> Self:
        """Create a provider with an injected client."""
        provider = cls.model_construct(**settings)
        provider._injected_client = client
        return provider

    @cached_property
    def client(self) -> ProxmoxAPI:
        """Get the Proxmox API client."""
        if self._injected_client is not None:
            return self._injected_client

        if self.host is None:
            raise ValueError("Proxmox host is not configured")

        if self.token_name and self.token_value is not None:
            return ProxmoxAPI(
                self.host,
                port=self.port,
                user=self.user,
                token_name=self.token_name,
                token_value=self.token_value.get_secret_value(),
                verify_ssl=self.verify_ssl,
            )
        if self.password is not None:
            return ProxmoxAPI(
                self.host,
                port=self.port,
                user=self.user,
                password=self.password.get_secret_value(),
                verify_ssl=self.verify_ssl,
            )
        raise ValueError("Proxmox credentials missing: set token_name+token_value or password")


class LinodeProvider(BaseModel):
    """Connection configuration for the Linode API.

    ``root_password`` is used when creating instances; it is kept here rather
    than on the instance resource so it never reaches plans or state files.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    token: SecretStr | None = None
    root_password: SecretStr | None = None

    _injected_client: LinodeClient | None = None

    @classmethod
    def from_client(cls, client: LinodeClient, **settings: object) -> Self:
        """Create a provider with an injected client."""
        provider = cls.model_construct(**settings)
        provider._injected_client = client
        return provider

    @cached_property
    def client(self) -> LinodeClient:
        """Get the Linode API client."""
        if self._injected_client is not None:
            return self._injected_client

        if self.token is None:
            raise ValueError("Linode API token is not configured")
        return LinodeClient(self.token.get_secret_value())


@dataclass(frozen=True)
class ProviderSet:
    """The provider connections available to handlers during a run."""

    proxmox: ProxmoxProvider | None = None
    linode: LinodeProvider | None = None

    def require_proxmox(self) -> ProxmoxProvider:
        if self.proxmox is None:
            raise ValueError("No Proxmox provider configured")
        return self.proxmox

    def require_linode(self) -> LinodeProvider:
        if self.linode is None:
            raise ValueError("No Linode provider configured")
        return self.linode
