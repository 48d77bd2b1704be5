"""
Switch Control Port Factory
"""
from typing import Dict, Type

from campaign_dialer.domain.interfaces.switch_control_port import SwitchControlPort
from campaign_dialer.infrastructure.telephony.ami_switch_port import AmiSwitchPort


class SwitchPortFactory:
    """Factory for creating Switch Control Port instances"""

    _providers: Dict[str, Type[SwitchControlPort]] = {}

    @classmethod
    def create(cls, provider_name: str, settings) -> SwitchControlPort:
        """Create a switch port configured from application settings"""
        if provider_name not in cls._providers:
            available = ", ".join(cls._providers.keys()) if cls._providers else "None"
            raise ValueError(f"Unknown switch provider: {provider_name}. Available: {available}")

        provider_class = cls._providers[provider_name]
        return provider_class.from_settings(settings)

    @classmethod
    def register(cls, name: str, provider_class: Type[SwitchControlPort]) -> None:
        """Register a provider"""
        cls._providers[name] = provider_class

    @classmethod
    def list_providers(cls) -> list[str]:
        """List available providers"""
        return list(cls._providers.keys())


SwitchPortFactory.register("ami", AmiSwitchPort)
