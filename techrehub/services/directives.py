"""Channel-agnostic reply directives.

The engine produces exactly one of the directive classes below per turn and
channel adapters render them; ``Directive`` is the closed union adapters
match on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from techrehub.services.catalog import CatalogItem


class ActionKind(str, Enum):
    SHOW_SERVICES = "show_services"
    SHOW_PRODUCTS = "show_products"
    SERVICE_DETAILS = "service_details"
    PRODUCT_DETAILS = "product_details"
    PRODUCT_INFO = "product_info"
    BOOK_SERVICE = "book_service"
    QUOTE_SERVICE = "quote_service"
    QUOTE_PRODUCT = "quote_product"
    DEMO_PRODUCT = "demo_product"
    SCHEDULE_DEMO = "schedule_demo"
    HUMAN_TRANSFER = "human_transfer"
    MAIN_MENU = "main_menu"
    HELP_MENU = "help_menu"
    CONFIRM = "confirm"
    RETRY = "retry"


@dataclass(frozen=True)
class QuickAction:
    """A button press decoded from a channel payload.

    ``target`` is a catalog id for item actions and a workflow name for
    confirm/retry.
    """

    kind: ActionKind
    target: str | None = None


@dataclass(frozen=True)
class Button:
    title: str
    action: QuickAction


@dataclass(frozen=True)
class TextDirective:
    text: str


@dataclass(frozen=True)
class CarouselDirective:
    kind: str  # services, products
    text: str
    items: tuple[CatalogItem, ...] = ()


@dataclass(frozen=True)
class QuickRepliesDirective:
    text: str
    buttons: tuple[Button, ...] = ()


@dataclass(frozen=True)
class ConfirmationPrompt:
    text: str
    workflow: str
    buttons: tuple[Button, ...] = ()


@dataclass(frozen=True)
class EscalationAck:
    text: str
    reference: str


@dataclass(frozen=True)
class NoAction:
    reason: str = ""


Directive = Union[TextDirective, CarouselDirective, QuickRepliesDirective, ConfirmationPrompt, EscalationAck, NoAction]


def directive_text(directive: Directive) -> str:
    if isinstance(directive, NoAction):
        return ""
    return directive.text


@dataclass
class TurnResult:
    """What one inbound turn produced: an intent label plus the directive to render."""

    intent: str
    directive: Directive
    details: dict | None = None
    notifications: list[tuple[str, dict]] = field(default_factory=list)

    @property
    def requires_confirmation(self) -> bool:
        return isinstance(self.directive, ConfirmationPrompt)

    def to_response(self) -> dict:
        response = {"intent": self.intent, "text": directive_text(self.directive)}
        if isinstance(self.directive, CarouselDirective):
            response["showCarousel"] = self.directive.kind
        if self.details:
            response["details"] = self.details
        if self.requires_confirmation:
            response["requiresConfirmation"] = True
        return response
