from __future__ import annotations

from stsaccess.core.config import get_settings
from stsaccess.core.errors import ProviderConfigError
from stsaccess.providers.provisioning.base import ProviderCredentials, ProvisioningProvider
from stsaccess.providers.provisioning.fake import FakeProvisioningProvider
from stsaccess.providers.provisioning.http_api import HttpAccessProvider
from stsaccess.providers.provisioning.manual import ManualProvider


def get_provisioning_provider(credentials: ProviderCredentials | None) -> ProvisioningProvider:
    settings = get_settings()
    provider = (settings.provisioning_provider or "http").lower()

    if provider == "http":
        # Unconfigured HTTP providers still load; jobs route to manual tasks on is_configured().
        return HttpAccessProvider(credentials)
    if provider == "manual":
        return ManualProvider()
    if provider == "fake":
        return FakeProvisioningProvider()

    raise ProviderConfigError(f"Unsupported provisioning provider: {provider}")
