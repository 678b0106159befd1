"""Conversation engine: resolves the user's stage, runs the staged workflow or
the intent classifier, and returns one directive per turn.

Everything below ``process_message`` / ``handle_action`` resolves to a
``TurnResult``; unexpected failures become a generic apology and are logged.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from techrehub.logging_config import turn_logger
from techrehub.services.catalog import Catalog, CatalogItem
from techrehub.services.conversation_context import ConversationContext, PaymentContext, PendingSubmission
from techrehub.services.directives import (
    ActionKind,
    Button,
    CarouselDirective,
    ConfirmationPrompt,
    EscalationAck,
    NoAction,
    QuickAction,
    QuickRepliesDirective,
    TextDirective,
    TurnResult,
)
from techrehub.services.errors import NotFoundError, ValidationError
from techrehub.services.intent_classifier import (
    ClassificationResult,
    IntentClassifier,
    info_target,
    is_info_intent,
    normalize_text,
)
from techrehub.services.notifier import OperatorNotifier
from techrehub.services.record_service import PaymentSummary, RecordService
from techrehub.services.session_store import SessionKey, SessionRecord, SessionStore
from techrehub.services.state_machine import (
    AWAITING_STAGES,
    CONFIRMING_STAGES,
    RESTING_STAGES,
    Stage,
    transition,
)
from techrehub.services.workflows import (
    BOOKING,
    DEMO,
    PRODUCT_QUOTATION,
    QUOTATION,
    WORKFLOWS,
    Workflow,
    classify_confirmation,
    match_command,
    workflow_for_stage,
)

MSG_ERROR = "I'm sorry, I encountered an error. Please try again or type 'help' for assistance."
MSG_SESSION_EXPIRED = "I notice it's been a while since our last interaction. Let me know how I can help you today!"
MSG_NOT_FOUND = "Sorry, I couldn't find that. Please try again."
MSG_ALREADY_HANDLED = "That request has already been handled. Type 'menu' to see what else I can do for you."
MSG_TRANSFER_ACK = (
    "I've notified our support team and shared your conversation history to provide better assistance. "
    "A human agent will contact you within the next 30 minutes during business hours (8 AM - 5 PM CAT).\n\n"
    "You can continue to send messages, and they will be forwarded to our team.\n\n"
    "Your chat reference number is: {reference}"
)
MSG_ALREADY_TRANSFERRED = "Our team already has your request (reference {reference}) and will reply here shortly."
MSG_CHAT_CLOSED = "Your conversation with our team has been closed. Type 'menu' to see how else I can help."
MSG_MAIN_MENU = "👋 Welcome to TechRehub! How can I help you today?"
MSG_HELP_MENU = (
    "ℹ️ *Here's what I can do:*\n\n"
    "• Type 'services' to browse our services\n"
    "• Type 'products' to explore our software products\n"
    "• Type 'book' to book a service\n"
    "• Type 'quote' to request a quotation\n"
    "• Type 'demo' to schedule a product demo\n"
    "• Type 'payment status' to check a payment\n"
    "• Type 'speak to a human' to reach our team\n"
    "• Type 'menu' at any time to start over"
)
MSG_PAYMENT_METHODS = "EcoCash, OneMoney, Bank Transfer, Card or Cash"

RESET_WORDS = {"cancel", "menu", "main menu", "start over", "restart"}
DEFER_PAYMENT_WORDS = {"later", "skip", "pay later", "not now"}
PAYMENT_METHOD_ALIASES = {
    "ecocash": "ecocash",
    "eco cash": "ecocash",
    "onemoney": "onemoney",
    "one money": "onemoney",
    "bank": "bank_transfer",
    "bank transfer": "bank_transfer",
    "transfer": "bank_transfer",
    "card": "card",
    "credit card": "card",
    "debit card": "card",
    "cash": "cash",
}
PAYMENT_INSTRUCTIONS = {
    "ecocash": "You'll receive an EcoCash prompt on your phone shortly. Approve it to complete the payment.",
    "onemoney": "You'll receive a OneMoney prompt on your phone shortly. Approve it to complete the payment.",
    "bank_transfer": "Please transfer the amount to TechRehub and use your payment reference as the transfer reference.",
    "card": "We'll send you a secure card payment link shortly.",
    "cash": "Please pay in cash when our technician completes the service.",
}

HandlerFn = Callable[[SessionRecord], Awaitable[TurnResult]]


@dataclass(frozen=True)
class MessageMeta:
    platform: str
    user_id: str
    message_id: str | None = None

    @property
    def key(self) -> SessionKey:
        return (self.user_id, self.platform)


class KeyedLocks:
    """One asyncio lock per session key, dropped once no turn is waiting on it."""

    def __init__(self):
        self._locks: dict[SessionKey, asyncio.Lock] = {}
        self._holders: Counter[SessionKey] = Counter()

    @contextlib.asynccontextmanager
    async def hold(self, key: SessionKey):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] <= 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def main_menu() -> QuickRepliesDirective:
    return QuickRepliesDirective(
        text=MSG_MAIN_MENU,
        buttons=(
            Button("🔧 Our Services", QuickAction(ActionKind.SHOW_SERVICES)),
            Button("💻 Our Products", QuickAction(ActionKind.SHOW_PRODUCTS)),
            Button("🙋 Talk to a Human", QuickAction(ActionKind.HUMAN_TRANSFER)),
        ),
    )


def help_menu() -> QuickRepliesDirective:
    return QuickRepliesDirective(
        text=MSG_HELP_MENU,
        buttons=(
            Button("🔧 Our Services", QuickAction(ActionKind.SHOW_SERVICES)),
            Button("💻 Our Products", QuickAction(ActionKind.SHOW_PRODUCTS)),
            Button("🏠 Main Menu", QuickAction(ActionKind.MAIN_MENU)),
        ),
    )


def item_details(item: CatalogItem) -> QuickRepliesDirective:
    if item.kind == "service":
        buttons = (
            Button("📅 Book Now", QuickAction(ActionKind.BOOK_SERVICE, item.id)),
            Button("💬 Get Quote", QuickAction(ActionKind.QUOTE_SERVICE, item.id)),
            Button("⬅️ All Services", QuickAction(ActionKind.SHOW_SERVICES)),
        )
    else:
        buttons = (
            Button("🎯 Request Demo", QuickAction(ActionKind.DEMO_PRODUCT, item.id)),
            Button("💬 Get Quote", QuickAction(ActionKind.QUOTE_PRODUCT, item.id)),
            Button("ℹ️ More Info", QuickAction(ActionKind.PRODUCT_INFO, item.id)),
        )
    return QuickRepliesDirective(text=item.details_text(), buttons=buttons)


def product_more_info(item: CatalogItem) -> QuickRepliesDirective:
    features = "\n".join(f"✓ {feature}" for feature in item.features)
    text = (
        f"📋 *{item.name} - More Information*\n\n{item.description}\n\n"
        f"*Key Features:*\n{features}\n\n"
        f"*Pricing:* {item.price}\n\n"
        "Includes implementation support, training for your team and ongoing maintenance."
    )
    return QuickRepliesDirective(
        text=text,
        buttons=(
            Button("🎯 Request Demo", QuickAction(ActionKind.DEMO_PRODUCT, item.id)),
            Button("💬 Get Quote", QuickAction(ActionKind.QUOTE_PRODUCT, item.id)),
            Button("⬅️ All Products", QuickAction(ActionKind.SHOW_PRODUCTS)),
        ),
    )


def confirmation_prompt(workflow: Workflow, fields: dict[str, str]) -> ConfirmationPrompt:
    return ConfirmationPrompt(
        text=workflow.summary(fields),
        workflow=workflow.name,
        buttons=(
            Button(workflow.confirm_title, QuickAction(ActionKind.CONFIRM, workflow.name)),
            Button(workflow.retry_title, QuickAction(ActionKind.RETRY, workflow.name)),
            Button("🙋 Talk to a Human", QuickAction(ActionKind.HUMAN_TRANSFER)),
        ),
    )


def follow_up(text: str) -> QuickRepliesDirective:
    return QuickRepliesDirective(
        text=f"{text}\n\nWhat else can I help you with?",
        buttons=(
            Button("🔧 Our Services", QuickAction(ActionKind.SHOW_SERVICES)),
            Button("💻 Our Products", QuickAction(ActionKind.SHOW_PRODUCTS)),
            Button("🏠 Main Menu", QuickAction(ActionKind.MAIN_MENU)),
        ),
    )


def payment_receipt(payment: PaymentSummary) -> str:
    return (
        "✅ Payment completed successfully!\n\n"
        f"Amount: {payment.amount_label}\n"
        f"Service: {payment.description}\n"
        f"Reference: {payment.reference}\n\n"
        "Thank you for your business! 🙏"
    )


class ConversationEngine:
    def __init__(
        self,
        *,
        classifier: IntentClassifier,
        store: SessionStore,
        records: RecordService,
        notifier: OperatorNotifier,
        catalog: Catalog,
        clock: Callable[[], datetime] = _utcnow,
        stale_after: timedelta = timedelta(minutes=30),
        history_limit: int = 20,
        serialize_turns: bool = True,
    ):
        self._classifier = classifier
        self._store = store
        self._records = records
        self._notifier = notifier
        self._catalog = catalog
        self._clock = clock
        self._stale_after = stale_after
        self._history_limit = history_limit
        self._locks = KeyedLocks() if serialize_turns else None

    async def process_message(self, text: str, meta: MessageMeta) -> TurnResult:
        """Run one free-text turn for (user, platform)."""

        async def handler(session: SessionRecord) -> TurnResult:
            return await self._on_text(session, text, meta)

        return await self._run_turn(meta, handler, remember=text, reset_if_stale=True)

    async def handle_action(self, action: QuickAction, meta: MessageMeta, label: str | None = None) -> TurnResult:
        """Run one button/postback turn. Stale sessions are reset silently before acting."""

        async def handler(session: SessionRecord) -> TurnResult:
            return await self._on_action(session, action, meta)

        return await self._run_turn(meta, handler, remember=label or action.kind.value, reset_if_stale=False)

    async def on_payment_update(self, payment: PaymentSummary) -> TurnResult:
        """React to a payment callback for the payment's owner."""
        meta = MessageMeta(platform=payment.platform, user_id=payment.user_id)
        log = turn_logger("conversation_engine", meta.user_id, meta.platform)
        try:
            async with self._serialized(meta.key):
                session = await self._store.load(meta.user_id, meta.platform)
                result = self._payment_update_result(session, payment)
                if session is not None:
                    await self._store.save(session)
        except Exception:
            log.error("Payment update failed", exc_info=True, context={"reference": payment.reference})
            return TurnResult(intent="error", directive=NoAction("payment update failed"))
        self._dispatch_notifications(result)
        return result

    def _serialized(self, key: SessionKey):
        if self._locks is None:
            return contextlib.nullcontext()
        return self._locks.hold(key)

    async def _run_turn(
        self,
        meta: MessageMeta,
        handler: HandlerFn,
        *,
        remember: str,
        reset_if_stale: bool,
    ) -> TurnResult:
        log = turn_logger("conversation_engine", meta.user_id, meta.platform, meta.message_id)
        try:
            async with self._serialized(meta.key):
                now = self._clock()
                session = await self._store.load(meta.user_id, meta.platform)
                if session is None:
                    session = SessionRecord.new(meta.user_id, meta.platform, now)
                elif session.is_stale(now, self._stale_after):
                    previous_stage = session.stage
                    session.reset(now)
                    if reset_if_stale:
                        await self._store.save(session)
                        log.info("Stale session reset", context={"previous_stage": previous_stage.value})
                        return TurnResult(intent="session_expired", directive=TextDirective(MSG_SESSION_EXPIRED))

                session.remember(remember, now, self._history_limit)
                try:
                    result = await handler(session)
                except NotFoundError as e:
                    log.warning(f"Reference not found: {e.message}")
                    result = TurnResult(intent="not_found", directive=TextDirective(MSG_NOT_FOUND))

                session.last_activity = now
                await self._store.save(session)
        except Exception:
            log.error("Turn failed", exc_info=True)
            return TurnResult(intent="error", directive=TextDirective(MSG_ERROR))

        log.info("Turn processed", context={"intent": result.intent, "stage": session.stage.value})
        self._dispatch_notifications(result)
        return result

    def _dispatch_notifications(self, result: TurnResult) -> None:
        for event, data in result.notifications:
            self._notifier.notify_in_background(event, data)

    def _move(self, session: SessionRecord, to_stage: Stage) -> None:
        session.stage = transition(session.stage, to_stage)

    def _reset(self, session: SessionRecord) -> None:
        self._move(session, Stage.INITIAL)
        session.context = {}

    # Free text

    async def _on_text(self, session: SessionRecord, text: str, meta: MessageMeta) -> TurnResult:
        normalized = normalize_text(text)
        if normalized in RESET_WORDS:
            self._reset(session)
            return TurnResult(intent="menu.main", directive=main_menu())

        if session.stage == Stage.TRANSFERRED:
            forwarded = await self._forward_to_agent(session, text)
            if forwarded is not None:
                return forwarded

        if session.stage in RESTING_STAGES and session.stage != Stage.INITIAL:
            self._reset(session)

        workflow = workflow_for_stage(session.stage)
        if session.stage in AWAITING_STAGES:
            command = match_command(text)
            return self._submit(session, WORKFLOWS[command] if command else workflow, text)
        if session.stage in CONFIRMING_STAGES:
            return await self._on_confirmation_reply(session, workflow, text, meta)
        if session.stage == Stage.AWAITING_PAYMENT:
            return await self._on_payment_reply(session, normalized)

        command = match_command(text)
        if command:
            return self._submit(session, WORKFLOWS[command], text)

        result = self._classifier.classify(text)
        return await self._on_intent(session, result, text, meta)

    async def _on_intent(
        self,
        session: SessionRecord,
        result: ClassificationResult,
        text: str,
        meta: MessageMeta,
    ) -> TurnResult:
        intent = result.intent
        if result.is_fallback:
            return TurnResult(intent="fallback", directive=TextDirective(result.answer or MSG_NOT_FOUND))

        if is_info_intent(intent):
            kind, item_id = info_target(intent)
            item = self._catalog.find(kind, item_id)
            if item is None:
                raise NotFoundError(f"Unknown catalog item in intent {intent}")
            return TurnResult(intent=intent, directive=item_details(item))

        if intent == "service.list":
            return self._carousel("services")
        if intent == "product.list":
            return self._carousel("products")
        if intent == "booking.start":
            return self._start_flow(session, BOOKING, self._subject_item(result, "service"))
        if intent == "quotation.start":
            product = self._subject_item(result, "product")
            if product is not None:
                return self._start_flow(session, PRODUCT_QUOTATION, product)
            return self._start_flow(session, QUOTATION, self._subject_item(result, "service"))
        if intent == "demo.request":
            return self._start_flow(session, DEMO, self._subject_item(result, "product"))
        if intent == "transfer.human":
            return await self._escalate(session, text, meta)
        if intent == "payment.initiate":
            return await self._resume_payment(session, meta)
        if intent == "payment.status":
            return await self._payment_status(meta)
        if intent == "menu.main":
            return TurnResult(intent=intent, directive=main_menu())
        if intent == "menu.help":
            return TurnResult(intent=intent, directive=help_menu())
        return TurnResult(intent=intent, directive=TextDirective(result.answer or MSG_NOT_FOUND))

    def _subject_item(self, result: ClassificationResult, kind: str) -> CatalogItem | None:
        if not is_info_intent(result.subject):
            return None
        subject_kind, item_id = info_target(result.subject)
        if subject_kind != kind:
            return None
        return self._catalog.find(kind, item_id)

    def _carousel(self, kind: str) -> TurnResult:
        if kind == "services":
            items = tuple(self._catalog.active_services())
            text = "Here are our available services:"
            intent = "service.list"
        else:
            items = tuple(self._catalog.active_products())
            text = "Here are our available products:"
            intent = "product.list"
        return TurnResult(intent=intent, directive=CarouselDirective(kind=kind, text=text, items=items))

    # Workflows

    def _start_flow(self, session: SessionRecord, workflow: Workflow, item: CatalogItem | None = None) -> TurnResult:
        if session.stage != Stage.INITIAL:
            self._reset(session)
        self._move(session, workflow.awaiting_stage)
        session.context = ConversationContext.for_flow(workflow.name, item.id if item else None).to_dict()
        return TurnResult(intent=f"{workflow.name}.start", directive=TextDirective(workflow.instructions(item)))

    def _submit(self, session: SessionRecord, workflow: Workflow, text: str) -> TurnResult:
        if session.stage not in (Stage.INITIAL, workflow.awaiting_stage):
            self._reset(session)
        context = ConversationContext.from_dict(session.context)
        item_id = context.item_id if context.workflow == workflow.name else None
        try:
            fields = workflow.parse(text)
        except ValidationError as e:
            if session.stage != workflow.awaiting_stage:
                self._move(session, workflow.awaiting_stage)
            session.context = ConversationContext.for_flow(workflow.name, item_id).to_dict()
            return TurnResult(
                intent=f"{workflow.name}.invalid",
                directive=TextDirective(workflow.retry_text(e.message)),
            )

        pending = PendingSubmission(
            workflow=workflow.name,
            reference=workflow.new_reference(),
            fields=fields,
            item_id=item_id,
        )
        self._move(session, workflow.confirming_stage)
        session.context = ConversationContext(workflow=workflow.name, item_id=item_id, pending=pending).to_dict()
        return TurnResult(
            intent=f"{workflow.name}.confirm",
            directive=confirmation_prompt(workflow, fields),
            details=dict(fields),
        )

    def _pending_for(self, session: SessionRecord, workflow: Workflow) -> PendingSubmission | None:
        pending = ConversationContext.from_dict(session.context).pending
        if pending is None or pending.workflow != workflow.name:
            return None
        return pending

    async def _on_confirmation_reply(
        self,
        session: SessionRecord,
        workflow: Workflow,
        text: str,
        meta: MessageMeta,
    ) -> TurnResult:
        pending = self._pending_for(session, workflow)
        if pending is None:
            return self._retry(session, workflow, "Sorry, I lost track of your details.")

        verdict = classify_confirmation(text)
        if verdict == "yes":
            return await self._finalize(session, workflow, pending, meta)
        if verdict == "no":
            return self._retry(session, workflow, "Let's try again.", pending.item_id)
        return TurnResult(
            intent=f"{workflow.name}.confirm",
            directive=confirmation_prompt(workflow, pending.fields),
            details=dict(pending.fields),
        )

    def _retry(
        self,
        session: SessionRecord,
        workflow: Workflow,
        reason: str,
        item_id: str | None = None,
    ) -> TurnResult:
        self._move(session, workflow.awaiting_stage)
        session.context = ConversationContext.for_flow(workflow.name, item_id).to_dict()
        return TurnResult(intent=f"{workflow.name}.retry", directive=TextDirective(workflow.retry_text(reason)))

    async def _finalize(
        self,
        session: SessionRecord,
        workflow: Workflow,
        pending: PendingSubmission,
        meta: MessageMeta,
    ) -> TurnResult:
        request = workflow.build_request(
            reference=pending.reference,
            user_id=meta.user_id,
            platform=meta.platform,
            fields=pending.fields,
            item_id=pending.item_id,
        )
        receipt = await self._records.create_record(request)
        notifications = [(workflow.operator_event, workflow.operator_payload(request))] if receipt.created else []
        details = {"reference": receipt.reference, **pending.fields}
        confirmed = workflow.confirmed_text(receipt.reference)

        if workflow.name == BOOKING.name:
            item = self._catalog.find("service", pending.item_id)
            if item is not None and item.amount:
                payment = await self._records.create_payment(
                    user_id=meta.user_id,
                    platform=meta.platform,
                    customer_name=pending.fields["name"],
                    amount=item.amount,
                    description=item.name,
                    booking_reference=receipt.reference,
                )
                self._move(session, Stage.AWAITING_PAYMENT)
                session.context = ConversationContext(
                    payment=PaymentContext(
                        reference=payment.reference,
                        amount=str(payment.amount),
                        currency=payment.currency,
                        description=payment.description,
                        booking_reference=receipt.reference,
                    )
                ).to_dict()
                prompt = (
                    f"💳 Amount due: {payment.amount_label} for {payment.description} "
                    f"(payment reference {payment.reference}).\n"
                    f"Reply with your payment method: {MSG_PAYMENT_METHODS}. "
                    "Reply 'later' to pay after the service."
                )
                return TurnResult(
                    intent=f"{workflow.name}.confirmed",
                    directive=TextDirective(f"{confirmed}\n\n{prompt}"),
                    details={**details, "payment_reference": payment.reference},
                    notifications=notifications,
                )

        self._reset(session)
        return TurnResult(
            intent=f"{workflow.name}.confirmed",
            directive=follow_up(confirmed),
            details=details,
            notifications=notifications,
        )

    # Payments

    async def _on_payment_reply(self, session: SessionRecord, normalized: str) -> TurnResult:
        context = ConversationContext.from_dict(session.context)
        payment = context.payment
        if payment is None:
            self._reset(session)
            return TurnResult(
                intent="payment.error",
                directive=TextDirective("Sorry, I could not find your payment information. Please start over."),
            )

        if normalized in DEFER_PAYMENT_WORDS:
            self._reset(session)
            return TurnResult(
                intent="payment.deferred",
                directive=TextDirective(
                    f"No problem. Your payment reference is {payment.reference}. "
                    "Type 'pay now' whenever you're ready."
                ),
            )

        method = PAYMENT_METHOD_ALIASES.get(normalized)
        if method is None:
            error = ValidationError(
                f"Please choose a payment method: {MSG_PAYMENT_METHODS}, or reply 'later'.",
                expected_format=MSG_PAYMENT_METHODS,
            )
            return TurnResult(intent="payment.invalid", directive=TextDirective(error.message))

        summary = await self._records.set_payment_method(payment.reference, method)
        payment.method = method
        session.context = context.to_dict()
        self._move(session, Stage.AWAITING_PAYMENT)
        return TurnResult(
            intent="payment.method_selected",
            directive=TextDirective(
                f"{PAYMENT_INSTRUCTIONS[method]}\n\n"
                f"Amount: {summary.amount_label}\nReference: {summary.reference}\n\n"
                "We'll confirm here as soon as the payment is received."
            ),
            details={"reference": summary.reference, "method": method},
        )

    async def _resume_payment(self, session: SessionRecord, meta: MessageMeta) -> TurnResult:
        payment = await self._records.latest_payment(meta.user_id, meta.platform)
        if payment is None or payment.status not in ("pending", "failed"):
            return TurnResult(
                intent="payment.initiate",
                directive=TextDirective(
                    f"You have no outstanding payments. We accept {MSG_PAYMENT_METHODS}. "
                    "Book a service first and I'll guide you through payment."
                ),
            )
        self._move(session, Stage.AWAITING_PAYMENT)
        session.context = ConversationContext(
            payment=PaymentContext(
                reference=payment.reference,
                amount=str(payment.amount),
                currency=payment.currency,
                description=payment.description,
                method=payment.method,
            )
        ).to_dict()
        return TurnResult(
            intent="payment.initiate",
            directive=TextDirective(
                f"💳 Amount due: {payment.amount_label} for {payment.description} "
                f"(reference {payment.reference}).\nReply with your payment method: {MSG_PAYMENT_METHODS}."
            ),
        )

    async def _payment_status(self, meta: MessageMeta) -> TurnResult:
        payment = await self._records.latest_payment(meta.user_id, meta.platform)
        if payment is None:
            text = "I couldn't find any payments for you yet."
        else:
            text = (
                f"Your payment {payment.reference} of {payment.amount_label} "
                f"for {payment.description} is *{payment.status}*."
            )
        return TurnResult(intent="payment.status", directive=TextDirective(text))

    def _payment_update_result(self, session: SessionRecord | None, payment: PaymentSummary) -> TurnResult:
        context = ConversationContext.from_dict(session.context) if session else ConversationContext()
        waiting = (
            session is not None
            and session.stage == Stage.AWAITING_PAYMENT
            and context.payment is not None
            and context.payment.reference == payment.reference
        )
        if payment.status == "completed":
            if waiting:
                self._move(session, Stage.PAYMENT_COMPLETED)
            return TurnResult(
                intent="payment.completed",
                directive=TextDirective(payment_receipt(payment)),
                details={"reference": payment.reference},
                notifications=[("PAYMENT_RECEIVED", {"reference": payment.reference, "amount": payment.amount_label})],
            )

        if waiting:
            context.payment.method = None
            session.context = context.to_dict()
        return TurnResult(
            intent="payment.failed",
            directive=TextDirective(
                f"Your payment {payment.reference} did not go through. "
                f"Reply with a payment method to try again: {MSG_PAYMENT_METHODS}."
            ),
            details={"reference": payment.reference},
            notifications=[("PAYMENT_FAILED", {"reference": payment.reference, "amount": payment.amount_label})],
        )

    # Escalation

    async def _escalate(self, session: SessionRecord, text: str, meta: MessageMeta) -> TurnResult:
        context = ConversationContext.from_dict(session.context)
        if session.stage == Stage.CLOSED:
            self._reset(session)
        if session.stage == Stage.TRANSFERRED and context.chat_session_id:
            return TurnResult(
                intent="transfer.human",
                directive=TextDirective(MSG_ALREADY_TRANSFERRED.format(reference=context.chat_session_id)),
            )

        chat_session_id = await self._records.create_chat_session(
            user_id=meta.user_id,
            platform=meta.platform,
            message=text,
            history=session.history,
            topic="Human Transfer Request",
        )
        self._move(session, Stage.TRANSFERRED)
        session.context = ConversationContext(chat_session_id=chat_session_id).to_dict()
        return TurnResult(
            intent="transfer.human",
            directive=EscalationAck(text=MSG_TRANSFER_ACK.format(reference=chat_session_id), reference=chat_session_id),
            details={"chat_session_id": chat_session_id},
            notifications=[
                (
                    "HUMAN_TRANSFER",
                    {
                        "from": meta.user_id,
                        "platform": meta.platform,
                        "message": text,
                        "chat_session_id": chat_session_id,
                    },
                )
            ],
        )

    async def _forward_to_agent(self, session: SessionRecord, text: str) -> TurnResult | None:
        """Forward a message to the open agent chat. Returns None if the bot should take over."""
        chat_session_id = ConversationContext.from_dict(session.context).chat_session_id
        if not chat_session_id:
            self._reset(session)
            return None
        if await self._records.append_chat_message(chat_session_id, text):
            return TurnResult(intent="transfer.forwarded", directive=NoAction("forwarded to agent"))
        self._move(session, Stage.CLOSED)
        session.context = {}
        return TurnResult(intent="transfer.closed", directive=TextDirective(MSG_CHAT_CLOSED))

    # Buttons and postbacks

    async def _on_action(self, session: SessionRecord, action: QuickAction, meta: MessageMeta) -> TurnResult:
        kind = action.kind
        if kind == ActionKind.SHOW_SERVICES:
            return self._carousel("services")
        if kind == ActionKind.SHOW_PRODUCTS:
            return self._carousel("products")
        if kind == ActionKind.SERVICE_DETAILS:
            item = self._catalog.get_service(action.target)
            return TurnResult(intent=f"service.info.{item.id}", directive=item_details(item))
        if kind == ActionKind.PRODUCT_DETAILS:
            item = self._catalog.get_product(action.target)
            return TurnResult(intent=f"product.info.{item.id}", directive=item_details(item))
        if kind == ActionKind.PRODUCT_INFO:
            item = self._catalog.get_product(action.target)
            return TurnResult(intent=f"product.info.{item.id}", directive=product_more_info(item))
        if kind == ActionKind.BOOK_SERVICE:
            return self._start_flow(session, BOOKING, self._catalog.get_service(action.target))
        if kind == ActionKind.QUOTE_SERVICE:
            return self._start_flow(session, QUOTATION, self._catalog.get_service(action.target))
        if kind == ActionKind.QUOTE_PRODUCT:
            return self._start_flow(session, PRODUCT_QUOTATION, self._catalog.get_product(action.target))
        if kind == ActionKind.DEMO_PRODUCT:
            return self._start_flow(session, DEMO, self._catalog.get_product(action.target))
        if kind == ActionKind.SCHEDULE_DEMO:
            return self._start_flow(session, DEMO)
        if kind == ActionKind.HUMAN_TRANSFER:
            return await self._escalate(session, "User requested human assistance", meta)
        if kind == ActionKind.MAIN_MENU:
            if session.stage != Stage.INITIAL:
                self._reset(session)
            return TurnResult(intent="menu.main", directive=main_menu())
        if kind == ActionKind.HELP_MENU:
            return TurnResult(intent="menu.help", directive=help_menu())
        if kind in (ActionKind.CONFIRM, ActionKind.RETRY):
            return await self._on_confirmation_action(session, action, meta)
        raise NotFoundError(f"Unhandled action {kind}")

    async def _on_confirmation_action(
        self,
        session: SessionRecord,
        action: QuickAction,
        meta: MessageMeta,
    ) -> TurnResult:
        workflow = WORKFLOWS.get(action.target or "")
        if workflow is None:
            raise NotFoundError(f"Unknown workflow {action.target}")
        pending = self._pending_for(session, workflow) if session.stage == workflow.confirming_stage else None
        if pending is None:
            return TurnResult(intent="confirmation.stale", directive=TextDirective(MSG_ALREADY_HANDLED))
        if action.kind == ActionKind.CONFIRM:
            return await self._finalize(session, workflow, pending, meta)
        return self._retry(session, workflow, "Let's try again.", pending.item_id)
