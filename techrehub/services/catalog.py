from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from techrehub.logging_config import get_logger
from techrehub.services.errors import NotFoundError

KNOWLEDGE_DIR = Path(__file__).resolve().parents[1] / "knowledge"
CATALOG_PATH = KNOWLEDGE_DIR / "catalog.yaml"
INTENTS_PATH = KNOWLEDGE_DIR / "intents.yaml"

logger = get_logger("catalog")


@dataclass(frozen=True)
class CatalogItem:
    id: str
    kind: str  # service, product
    name: str
    description: str
    category: str
    price: str
    amount: Decimal | None = None
    duration: str | None = None
    image: str | None = None
    keywords: tuple[str, ...] = ()
    features: tuple[str, ...] = ()
    is_active: bool = True

    @property
    def summary(self) -> str:
        if self.kind == "service" and self.duration:
            return f"{self.price} • {self.duration}"
        return f"{self.price} • {self.category}"

    def details_text(self) -> str:
        lines = [f"*{self.name}*", "", self.description, ""]
        if self.kind == "service":
            lines.append(f"💰 Price: {self.price}")
            if self.duration:
                lines.append(f"⏱️ Duration: {self.duration}")
        else:
            lines.append(f"💰 Pricing: {self.price}")
            lines.append(f"📂 Category: {self.category}")
        if self.features:
            lines.append("")
            lines.append("Features:")
            lines.extend(f"• {feature}" for feature in self.features)
        return "\n".join(lines)


@dataclass(frozen=True)
class CatalogSection:
    title: str
    items: tuple[CatalogItem, ...]


@dataclass
class Catalog:
    services: list[CatalogItem] = field(default_factory=list)
    products: list[CatalogItem] = field(default_factory=list)
    service_sections: list[tuple[str, tuple[str, ...]]] = field(default_factory=list)

    def active_services(self) -> list[CatalogItem]:
        return [item for item in self.services if item.is_active]

    def active_products(self) -> list[CatalogItem]:
        return [item for item in self.products if item.is_active]

    def active_items(self, kind: str) -> list[CatalogItem]:
        return self.active_services() if kind == "service" else self.active_products()

    def find(self, kind: str, item_id: str | None) -> CatalogItem | None:
        for item in self.active_items(kind):
            if item.id == item_id:
                return item
        return None

    def get_service(self, service_id: str | None) -> CatalogItem:
        item = self.find("service", service_id)
        if item is None:
            raise NotFoundError(f"Unknown service: {service_id}")
        return item

    def get_product(self, product_id: str | None) -> CatalogItem:
        item = self.find("product", product_id)
        if item is None:
            raise NotFoundError(f"Unknown product: {product_id}")
        return item

    def sections(self, kind: str) -> list[CatalogSection]:
        """Group active items for list-style rendering."""
        if kind == "product":
            return [CatalogSection(title="💻 Software Solutions", items=tuple(self.active_products()))]
        sections = []
        for title, categories in self.service_sections:
            items = tuple(item for item in self.active_services() if item.category in categories)
            sections.append(CatalogSection(title=title, items=items))
        grouped = {item.id for section in sections for item in section.items}
        leftovers = tuple(item for item in self.active_services() if item.id not in grouped)
        if leftovers:
            sections.append(CatalogSection(title="Other Services", items=leftovers))
        return sections


@lru_cache(maxsize=4)
def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.warning(f"Knowledge file missing: {path}")
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data if isinstance(data, dict) else {}


def _coerce_amount(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except ArithmeticError:
        logger.warning(f"Ignoring invalid catalog amount: {value!r}")
        return None


def _parse_item(raw: dict, kind: str) -> CatalogItem | None:
    item_id = str(raw.get("id") or "").strip()
    name = str(raw.get("name") or "").strip()
    if not item_id or not name:
        return None
    return CatalogItem(
        id=item_id,
        kind=kind,
        name=name,
        description=str(raw.get("description") or ""),
        category=str(raw.get("category") or "general"),
        price=str(raw.get("price") or "Custom quote"),
        amount=_coerce_amount(raw.get("amount")),
        duration=raw.get("duration"),
        image=raw.get("image"),
        keywords=tuple(str(k) for k in raw.get("keywords") or [] if str(k).strip()),
        features=tuple(str(f) for f in raw.get("features") or []),
        is_active=bool(raw.get("is_active", True)),
    )


def parse_catalog(data: dict) -> Catalog:
    services = [_parse_item(raw, "service") for raw in data.get("services") or [] if isinstance(raw, dict)]
    products = [_parse_item(raw, "product") for raw in data.get("products") or [] if isinstance(raw, dict)]
    sections = []
    for raw in data.get("service_sections") or []:
        if isinstance(raw, dict) and raw.get("title"):
            sections.append((str(raw["title"]), tuple(str(c) for c in raw.get("categories") or [])))
    return Catalog(
        services=[item for item in services if item],
        products=[item for item in products if item],
        service_sections=sections,
    )


@lru_cache(maxsize=1)
def load_catalog() -> Catalog:
    return parse_catalog(_load_yaml(CATALOG_PATH))


def load_intents_file() -> dict:
    return _load_yaml(INTENTS_PATH)
