"""Capability oracle for multi-instance installs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

# License SKUs that unlock installing more than one upstream instance.
ENTERPRISE_SKUS = frozenset({"professional", "enterprise", "advanced"})


class EnterpriseChecker(Protocol):
    def has_enterprise_features(self) -> bool: ...


@dataclass(frozen=True)
class LicenseChecker:
    """Answers from the host license SKU, or unconditionally in developer mode."""

    license_sku: str | None = None
    developer_mode: bool = False

    def has_enterprise_features(self) -> bool:
        if self.developer_mode:
            return True
        if not self.license_sku:
            return False
        return self.license_sku.strip().lower() in ENTERPRISE_SKUS
