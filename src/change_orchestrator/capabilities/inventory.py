"""Read-only asset inventory boundary consumed by query capabilities."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

ENVIRONMENT_ALIASES = {
    "prod": "production",
    "production": "production",
    "prd": "production",
    "staging": "staging",
    "stage": "staging",
    "stg": "staging",
    "dev": "development",
    "development": "development",
    "test": "development",
}


def normalize_environment(value: str | None) -> str | None:
    if value is None:
        return None
    return ENVIRONMENT_ALIASES.get(value.strip().lower())


def is_production(environment: str | None) -> bool:
    return normalize_environment(environment) == "production"


class Asset(BaseModel):
    asset_id: str
    platform: str = "aws"
    environment: str = "development"
    region: str = "us-east-1"
    state: str = "running"
    image_family: str = "base"
    image_version: str = "1.0.0"
    failing_controls: list[str] = Field(default_factory=list)
    dr_replica: str | None = None
    monthly_cost: float = 0.0
    cpu_utilization: float = 0.0
    open_alerts: list[str] = Field(default_factory=list)


class InventoryProvider(Protocol):
    def list_assets(self) -> list[Asset]: ...

    def golden_version(self, family: str) -> str | None: ...

    def image_versions(self, family: str) -> list[str]: ...


class StaticInventory:
    """Inventory snapshot loaded once; discovery connectors feed it out of band."""

    def __init__(
        self,
        assets: list[Asset] | None = None,
        *,
        golden_images: dict[str, list[str]] | None = None,
    ) -> None:
        self._assets = list(assets or [])
        self._golden_images = {family: list(versions) for family, versions in (golden_images or {}).items()}

    @classmethod
    def from_json(cls, path: str | Path) -> StaticInventory:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StaticInventory:
        assets = [Asset.model_validate(item) for item in payload.get("assets", [])]
        golden = payload.get("golden_images", {})
        return cls(assets, golden_images=golden if isinstance(golden, dict) else {})

    def list_assets(self) -> list[Asset]:
        return [asset.model_copy() for asset in self._assets]

    def golden_version(self, family: str) -> str | None:
        versions = self._golden_images.get(family)
        return versions[-1] if versions else None

    def image_versions(self, family: str) -> list[str]:
        return list(self._golden_images.get(family, []))

    def query(
        self,
        *,
        environment: str | None = None,
        platform: str | None = None,
        state: str | None = None,
    ) -> list[Asset]:
        target_env = normalize_environment(environment)
        output: list[Asset] = []
        for asset in self._assets:
            if target_env and normalize_environment(asset.environment) != target_env:
                continue
            if platform and asset.platform != platform:
                continue
            if state and asset.state != state:
                continue
            output.append(asset.model_copy())
        return sorted(output, key=lambda item: item.asset_id)


def demo_inventory() -> StaticInventory:
    """Small fleet used when no inventory file is configured."""
    assets: list[Asset] = []
    layout = (("production", "prod", 20), ("staging", "stg", 8), ("development", "dev", 5))
    for environment, prefix, count in layout:
        for index in range(1, count + 1):
            assets.append(
                Asset(
                    asset_id=f"{prefix}-web-{index:02d}",
                    platform="aws" if index % 3 else "azure",
                    environment=environment,
                    image_version="2.3.0" if index % 4 == 0 else "2.4.0",
                    failing_controls=["cis-5.2.1"] if index % 5 == 0 else [],
                    dr_replica=f"{prefix}-web-{index:02d}-dr" if index % 2 else None,
                    monthly_cost=120.0 + index,
                    cpu_utilization=8.0 if index % 6 == 0 else 55.0,
                )
            )
    return StaticInventory(assets, golden_images={"base": ["2.3.0", "2.4.0"]})
