"""In-process registries for brand kits and templates.

Both are owned by other services in a full deployment; the dict-backed
registries here resolve ids for the generation endpoint.
"""

from typing import Dict, Iterable, Optional

from pydantic import BaseModel

from .models import BrandAttributes, TemplateDescriptor


class BrandKit(BaseModel):
    id: str
    name: str
    attributes: BrandAttributes


class BrandKitRegistry:
    def __init__(self, kits: Optional[Iterable[BrandKit]] = None):
        self._kits: Dict[str, BrandKit] = {}
        for kit in kits or ():
            self.register(kit)

    def register(self, kit: BrandKit) -> None:
        self._kits[kit.id] = kit

    def get(self, kit_id: str) -> Optional[BrandKit]:
        return self._kits.get(kit_id)


class TemplateRegistry:
    def __init__(self, templates: Optional[Iterable[TemplateDescriptor]] = None):
        self._templates: Dict[str, TemplateDescriptor] = {}
        for template in templates or ():
            self.register(template)

    def register(self, template: TemplateDescriptor) -> None:
        if not template.id:
            raise ValueError("Registered templates need an id")
        self._templates[template.id] = template

    def get(self, template_id: str) -> Optional[TemplateDescriptor]:
        return self._templates.get(template_id)


DEFAULT_TEMPLATES = [
    TemplateDescriptor(
        id="events/neon-night",
        name="Neon Night",
        category="events",
        tags=["nightlife", "bold typography", "dark background"],
        description="Event flyer with a dark backdrop and glowing accent typography",
        neon_effects=True,
    ),
    TemplateDescriptor(
        id="business/glass-card",
        name="Glass Card",
        category="business",
        tags=["corporate", "frosted panels", "clean layout"],
        description="Business promotion built around a frosted glass content card",
        glass_morphism=True,
    ),
    TemplateDescriptor(
        id="retail/sale-burst",
        name="Sale Burst",
        category="retail",
        tags=["discount", "high contrast", "call to action"],
        description="Retail sale announcement with a large price callout",
    ),
]
