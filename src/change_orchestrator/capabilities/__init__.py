"""Capability registry, inventory boundary and schema-enforcing gateway."""

from change_orchestrator.capabilities.gateway import CapabilityGateway, CapabilityResult
from change_orchestrator.capabilities.inventory import Asset, StaticInventory, demo_inventory
from change_orchestrator.capabilities.registry import (
    CapabilityRegistry,
    CapabilitySpec,
    build_registry,
    list_tools,
    nonprod_variant,
)

__all__ = [
    "Asset",
    "CapabilityGateway",
    "CapabilityRegistry",
    "CapabilityResult",
    "CapabilitySpec",
    "StaticInventory",
    "build_registry",
    "demo_inventory",
    "list_tools",
    "nonprod_variant",
]
