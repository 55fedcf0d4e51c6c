"""Per-user conversation state machine.

Implements the onboarding flow and the in-session sub-flows::

    new → awaiting_currency → awaiting_budget → active
    active → awaiting_ocr_confirmation → active
    active → awaiting_ocr_amount       → active
    active → awaiting_currency_change  → active

In ``active`` a message is matched against the command recognizers in a
fixed priority order (first match wins, no scoring):

1. export phrases            6. ``no it will be <expense>``
2. ``budget <amount>``       7. ``#<N> edit <amount>`` / ``#<N> delete`` /
3. ``currency <name>``          ``#<N> <item> <amount>``
4. ``help``                  8. image → receipt pipeline
5. ``report``                9. letter + digit → text expense
                             10. anything else → "didn't understand"

The single public entry point, :meth:`Orchestrator.handle_message`, returns
an :class:`OrchestratorResult` that the bot handler sends after the DB
session commits.  Hosted images released by a delete or a discarded draft
travel on the result too and are removed by :meth:`Orchestrator.release_images`
once the commit has happened.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from spendbot.agent.extraction import ExpenseExtractor
from spendbot.agent.llm_client import LLMResponse
from spendbot.agent.messages import InboundMessage, MediaPayload
from spendbot.agent.state import (
    CurrencyChange,
    ExpenseDraft,
    OCRAmount,
    OCRConfirmation,
    UserState,
    pending_action_from_json,
    pending_action_to_json,
)
from spendbot.expenses.currency import detect_currency, month_key, to_cents
from spendbot.expenses.export import (
    XLSX_MIME_TYPE,
    is_export_request,
    render_expenses_xlsx,
    resolve_export_period,
)
from spendbot.expenses.image_pipeline import ImageOutcome, process_image
from spendbot.expenses.parser import parse_amount, parse_expense_text
from spendbot.expenses.reconciliation import (
    ExpenseFormatError,
    ExpenseNotFoundError,
    add_expense,
    correct_last_expense,
    delete_expense_by_number,
    edit_expense_by_number,
)
from spendbot.integrations.image_host import ImageHost
from spendbot.ledger import repository
from spendbot.ledger.models import UserProfile

logger = logging.getLogger(__name__)

_YES = frozenset({"yes", "y"})
_NO = frozenset({"no", "n"})
_CANCEL = _NO | {"cancel"}

_BUDGET_CMD_RE = re.compile(r"^budget\s+(?P<amount>\d[\d,]*(?:\.\d+)?)\b", re.IGNORECASE)
_CURRENCY_CMD_RE = re.compile(r"^currency\s+(?P<currency>\S.*)$", re.IGNORECASE)
_CORRECTION_RE = re.compile(r"^no it will be\b(?P<rest>.*)$", re.IGNORECASE | re.DOTALL)
_REFERENCE_RE = re.compile(r"^#(?P<number>\d+)\b\s*(?P<rest>.*)$", re.DOTALL)
_DELETE_RE = re.compile(r"^delete$", re.IGNORECASE)
_LETTER_RE = re.compile(r"[^\W\d_]")
_DIGIT_RE = re.compile(r"\d")
_THOUSANDS_RE = re.compile(r"^\d{1,3}(?:,\d{3})+(?:\.\d+)?$")


def _parse_budget_amount(text: str) -> Decimal | None:
    """Read a budget such as ``2000``, ``2000.50`` or ``30,000``."""
    stripped = text.strip()
    if _THOUSANDS_RE.match(stripped):
        stripped = stripped.replace(",", "")
    return parse_amount(stripped)


# ── Result dataclass ──────────────────────────────────────────────────────────


@dataclass
class OrchestratorResult:
    """Value object returned by the orchestrator to the bot handler layer."""

    #: Text replies, sent in order.
    replies: list[str] = field(default_factory=list)

    #: Optional document (spreadsheet export), sent before the replies.
    document: MediaPayload | None = None

    #: The LLM response(s) generated during this step (for logging).
    llm_responses: list[LLMResponse] = field(default_factory=list)

    #: Hosted image refs to delete once the session has committed.
    released_images: list[str] = field(default_factory=list)

    @property
    def reply_text(self) -> str:
        return "\n\n".join(self.replies)


def _reply(text: str, **kwargs) -> OrchestratorResult:
    return OrchestratorResult(replies=[text], **kwargs)


def _draft_images(draft: ExpenseDraft) -> list[str]:
    return [draft.image.ref] if draft.image is not None else []


def _load_pending(user: UserProfile) -> OCRConfirmation | OCRAmount | CurrencyChange | None:
    try:
        return pending_action_from_json(user.pending_action)
    except ValidationError:
        logger.warning("Discarding unreadable pending action for %s", user.user_id)
        return None


# ── Orchestrator ──────────────────────────────────────────────────────────────


class Orchestrator:
    """State machine for one inbound message at a time.

    Args:
        extractor: LLM-backed extractor for receipts and unparseable text.
        image_host: Receipt image storage, or ``None`` to skip hosting.
        clock: Returns "today"; injectable so tests can pin the calendar.
    """

    def __init__(
        self,
        extractor: ExpenseExtractor,
        image_host: ImageHost | None = None,
        clock: Callable[[], date] | None = None,
    ) -> None:
        self._extractor = extractor
        self._image_host = image_host
        self._clock = clock or date.today

    # ── Public entry point ────────────────────────────────────────────────

    async def handle_message(
        self,
        message: InboundMessage,
        session: AsyncSession,
    ) -> OrchestratorResult:
        """Process one inbound message through the state machine.

        Args:
            message: The channel-neutral inbound message.
            session: Active DB session (the caller commits).

        Returns:
            An :class:`OrchestratorResult` for the bot handler to send.
        """
        user_id = message.sender
        user = await repository.get_or_create_user(session, user_id)

        text = (message.body or "").strip()
        if message.body or message.has_media:
            await repository.save_conversation_message(
                session, user_id, message.body or "[media]",
            )

        try:
            state = UserState(user.state)
        except ValueError:
            logger.warning("User %s has unknown state %r; resetting to active", user_id, user.state)
            state = UserState.ACTIVE

        logger.info("Message from %s in state %s: %r", user_id, state, text[:100])
        today = self._clock()

        if state is UserState.NEW:
            return await self._start_onboarding(session, user_id, today)
        if state is UserState.AWAITING_CURRENCY:
            return await self._onboard_currency(session, user_id, text)
        if state is UserState.AWAITING_BUDGET:
            return await self._onboard_budget(session, user, text, today)
        if state is UserState.AWAITING_OCR_CONFIRMATION:
            return await self._resolve_ocr_confirmation(session, user, message, text, today)
        if state is UserState.AWAITING_OCR_AMOUNT:
            return await self._resolve_ocr_amount(session, user, message, text, today)
        if state is UserState.AWAITING_CURRENCY_CHANGE:
            return await self._resolve_currency_change(session, user, message, text, today)
        return await self._dispatch_active(session, user, message, text, today)

    # ── Onboarding ────────────────────────────────────────────────────────

    async def _start_onboarding(
        self, session: AsyncSession, user_id: str, today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import format_welcome

        await repository.set_user_state(session, user_id, UserState.AWAITING_CURRENCY)
        logger.info("User %s: new -> awaiting_currency", user_id)
        return _reply(format_welcome(today))

    async def _onboard_currency(
        self, session: AsyncSession, user_id: str, text: str,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import (
            ONBOARDING_INVALID_CURRENCY_TEXT,
            format_currency_accepted,
        )

        currency = detect_currency(text)
        if currency is None:
            return _reply(ONBOARDING_INVALID_CURRENCY_TEXT)

        await repository.set_user_currency(
            session, user_id, currency, state=UserState.AWAITING_BUDGET,
        )
        logger.info("User %s: currency=%s, awaiting_currency -> awaiting_budget", user_id, currency)
        return _reply(format_currency_accepted(currency))

    async def _onboard_budget(
        self, session: AsyncSession, user: UserProfile, text: str, today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import format_budget_reprompt, format_budget_set

        amount = _parse_budget_amount(text)
        if amount is None:
            return _reply(format_budget_reprompt(user.currency))

        await repository.upsert_monthly_budget(
            session, user.user_id, month_key(today), amount, user.currency,
        )
        await repository.set_user_state(session, user.user_id, UserState.ACTIVE)
        logger.info("User %s: budget=%s %s, awaiting_budget -> active", user.user_id, amount, user.currency)
        return _reply(format_budget_set(amount, user.currency, today, first_time=True))

    # ── Pending-action sub-flows ──────────────────────────────────────────

    async def _resolve_ocr_confirmation(
        self,
        session: AsyncSession,
        user: UserProfile,
        message: InboundMessage,
        text: str,
        today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import OCR_CONFIRM_REPROMPT_TEXT, OCR_DISCARDED_TEXT

        pending = _load_pending(user)
        if not isinstance(pending, OCRConfirmation):
            return await self._recover_missing_pending(session, user, message, text, today)

        answer = text.lower()
        if answer in _YES:
            result = await self._save_draft(session, user, pending.draft, today)
            await repository.clear_pending_action(session, user.user_id)
            return result
        if answer in _NO:
            await repository.clear_pending_action(session, user.user_id)
            logger.info("User %s discarded receipt draft", user.user_id)
            return _reply(OCR_DISCARDED_TEXT, released_images=_draft_images(pending.draft))
        return _reply(OCR_CONFIRM_REPROMPT_TEXT)

    async def _resolve_ocr_amount(
        self,
        session: AsyncSession,
        user: UserProfile,
        message: InboundMessage,
        text: str,
        today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import OCR_DISCARDED_TEXT, format_ocr_amount_reprompt

        pending = _load_pending(user)
        if not isinstance(pending, OCRAmount):
            return await self._recover_missing_pending(session, user, message, text, today)

        if text.lower() in _CANCEL:
            await repository.clear_pending_action(session, user.user_id)
            logger.info("User %s cancelled receipt amount prompt", user.user_id)
            return _reply(OCR_DISCARDED_TEXT, released_images=_draft_images(pending.draft))

        amount = parse_amount(text)
        if amount is not None:
            draft = pending.draft.model_copy(update={"price": amount})
        else:
            parsed = parse_expense_text(text)
            if parsed is None:
                return _reply(format_ocr_amount_reprompt(pending.draft))
            draft = pending.draft.model_copy(update={"item": parsed.item, "price": parsed.price})

        result = await self._save_draft(session, user, draft, today)
        await repository.clear_pending_action(session, user.user_id)
        return result

    async def _resolve_currency_change(
        self,
        session: AsyncSession,
        user: UserProfile,
        message: InboundMessage,
        text: str,
        today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import (
            CURRENCY_CHANGE_CANCELLED_TEXT,
            CURRENCY_CHANGE_REPROMPT_TEXT,
            format_currency_changed,
        )

        pending = _load_pending(user)
        if not isinstance(pending, CurrencyChange):
            return await self._recover_missing_pending(session, user, message, text, today)

        answer = text.lower()
        if answer in _YES:
            await repository.confirm_currency_change(session, user.user_id, pending.currency)
            logger.info("User %s: currency %s -> %s", user.user_id, user.currency, pending.currency)
            return _reply(format_currency_changed(pending.currency))
        if answer in _NO:
            await repository.clear_pending_action(session, user.user_id)
            return _reply(CURRENCY_CHANGE_CANCELLED_TEXT)
        return _reply(CURRENCY_CHANGE_REPROMPT_TEXT)

    async def _recover_missing_pending(
        self,
        session: AsyncSession,
        user: UserProfile,
        message: InboundMessage,
        text: str,
        today: date,
    ) -> OrchestratorResult:
        """State says ``awaiting_*`` but the pending action is missing or of another kind."""
        logger.warning(
            "User %s in %s without a matching pending action; returning to active",
            user.user_id, user.state,
        )
        await repository.clear_pending_action(session, user.user_id)
        return await self._dispatch_active(session, user, message, text, today)

    async def _save_draft(
        self,
        session: AsyncSession,
        user: UserProfile,
        draft: ExpenseDraft,
        today: date,
    ) -> OrchestratorResult:
        """Persist a receipt draft with the user's *current* currency, dated today."""
        from spendbot.bot.formatters import format_reconciliation

        outcome = await add_expense(
            session,
            user.user_id,
            item=draft.item,
            price=to_cents(draft.price),
            currency=user.currency,
            expense_date=today,
            today=today,
            image=draft.image,
        )
        return _reply(format_reconciliation(outcome, today))

    async def release_images(self, refs: list[str]) -> None:
        """Delete hosted images whose expense or draft is gone, best effort.

        Must only run after the session that dropped the references commits.
        """
        if self._image_host is None:
            return
        for ref in refs:
            try:
                await self._image_host.delete(ref)
            except Exception:
                logger.exception("Could not delete receipt image %s", ref)

    async def _set_pending(
        self,
        session: AsyncSession,
        user_id: str,
        action: OCRConfirmation | OCRAmount | CurrencyChange,
    ) -> None:
        await repository.set_pending_action(
            session, user_id, pending_action_to_json(action), action.state,
        )
        logger.info("User %s: active -> %s", user_id, action.state)

    # ── Active dispatch ───────────────────────────────────────────────────

    async def _dispatch_active(
        self,
        session: AsyncSession,
        user: UserProfile,
        message: InboundMessage,
        text: str,
        today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import HELP_TEXT, NOT_UNDERSTOOD_TEXT

        lowered = text.lower()

        if text and is_export_request(text):
            return await self._export(session, user, text, today)

        budget_cmd = _BUDGET_CMD_RE.match(text)
        if budget_cmd:
            return await self._update_budget(session, user, budget_cmd.group("amount"), today)

        currency_cmd = _CURRENCY_CMD_RE.match(text)
        if currency_cmd:
            return await self._stage_currency_change(session, user, currency_cmd.group("currency"))

        if lowered == "help":
            return _reply(HELP_TEXT)

        if lowered == "report":
            return await self._export(session, user, text, today)

        correction = _CORRECTION_RE.match(text)
        if correction:
            return await self._correct_last(session, user, correction.group("rest"), today)

        reference = _REFERENCE_RE.match(text)
        if reference:
            return await self._reference_command(
                session, user, int(reference.group("number")), reference.group("rest"), today,
            )

        if message.has_media:
            return await self._handle_image(session, user, message, text, today)

        if _LETTER_RE.search(text) and _DIGIT_RE.search(text):
            return await self._handle_text_expense(session, user, text, today)

        return _reply(NOT_UNDERSTOOD_TEXT)

    async def _export(
        self, session: AsyncSession, user: UserProfile, text: str, today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import EXPORT_EMPTY_TEXT, format_export_sent

        period = resolve_export_period(text, today)
        records = await repository.list_expenses(
            session, user.user_id, date_from=period.date_from, date_to=period.date_to,
        )
        if not records:
            return _reply(EXPORT_EMPTY_TEXT)

        document = MediaPayload(
            mime_type=XLSX_MIME_TYPE,
            data=render_expenses_xlsx(records),
            filename=period.filename,
        )
        logger.info("Exporting %d expenses (%s) for %s", len(records), period.label, user.user_id)
        return _reply(format_export_sent(period.filename, len(records)), document=document)

    async def _update_budget(
        self, session: AsyncSession, user: UserProfile, raw_amount: str, today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import format_budget_reprompt, format_budget_set

        amount = _parse_budget_amount(raw_amount)
        if amount is None:
            return _reply(format_budget_reprompt(user.currency))
        await repository.upsert_monthly_budget(
            session, user.user_id, month_key(today), amount, user.currency,
        )
        logger.info("User %s updated %s budget to %s", user.user_id, month_key(today), amount)
        return _reply(format_budget_set(amount, user.currency, today, first_time=False))

    async def _stage_currency_change(
        self, session: AsyncSession, user: UserProfile, requested: str,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import (
            INVALID_CURRENCY_TEXT,
            format_currency_change_prompt,
        )

        currency = detect_currency(requested)
        if currency is None:
            return _reply(INVALID_CURRENCY_TEXT)
        await self._set_pending(session, user.user_id, CurrencyChange(currency=currency))
        return _reply(format_currency_change_prompt(currency, user.currency))

    async def _correct_last(
        self, session: AsyncSession, user: UserProfile, rest: str, today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import (
            CORRECTION_FORMAT_TEXT,
            NO_EXPENSE_TO_CORRECT_TEXT,
            format_reconciliation,
        )

        try:
            outcome = await correct_last_expense(
                session, user.user_id, rest.strip(), currency=user.currency, today=today,
            )
        except ExpenseFormatError:
            return _reply(CORRECTION_FORMAT_TEXT)
        except ExpenseNotFoundError:
            return _reply(NO_EXPENSE_TO_CORRECT_TEXT)
        return _reply(format_reconciliation(outcome, today))

    async def _reference_command(
        self,
        session: AsyncSession,
        user: UserProfile,
        number: int,
        rest: str,
        today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import (
            EDIT_FORMAT_TEXT,
            format_not_found,
            format_reconciliation,
        )

        rest = rest.strip()
        try:
            if _DELETE_RE.match(rest):
                outcome = await delete_expense_by_number(
                    session,
                    user.user_id,
                    number,
                    currency=user.currency,
                    today=today,
                )
            else:
                outcome = await edit_expense_by_number(
                    session, user.user_id, number, rest, currency=user.currency, today=today,
                )
        except ExpenseNotFoundError:
            return _reply(format_not_found(number))
        except ExpenseFormatError:
            return _reply(EDIT_FORMAT_TEXT)
        released = [outcome.released_image_ref] if outcome.released_image_ref else []
        return _reply(format_reconciliation(outcome, today), released_images=released)

    async def _handle_image(
        self,
        session: AsyncSession,
        user: UserProfile,
        message: InboundMessage,
        caption: str,
        today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import (
            MEDIA_DOWNLOAD_FAILED_TEXT,
            OCR_CLARIFY_TEXT,
            ONLY_IMAGES_TEXT,
            format_ocr_amount_prompt,
            format_ocr_confirmation,
            format_reconciliation,
        )

        media = await message.download_media() if message.download_media else None
        if media is None:
            return _reply(MEDIA_DOWNLOAD_FAILED_TEXT)
        if not media.is_image:
            return _reply(ONLY_IMAGES_TEXT)

        decision = await process_image(
            media=media,
            caption=caption,
            user_id=user.user_id,
            today=today,
            extractor=self._extractor,
            image_host=self._image_host,
        )
        responses = decision.llm_responses

        if decision.outcome is ImageOutcome.AUTO_SAVED and decision.draft is not None:
            outcome = await add_expense(
                session,
                user.user_id,
                item=decision.draft.item,
                price=decision.draft.price,
                currency=user.currency,
                expense_date=decision.draft.expense_date or today,
                today=today,
                image=decision.draft.image,
            )
            return _reply(format_reconciliation(outcome, today), llm_responses=responses)

        if decision.outcome is ImageOutcome.CONFIRMATION_REQUESTED and decision.draft is not None:
            await self._set_pending(session, user.user_id, OCRConfirmation(draft=decision.draft))
            return _reply(
                format_ocr_confirmation(decision.draft, user.currency),
                llm_responses=responses,
            )

        if decision.outcome is ImageOutcome.AWAITING_AMOUNT and decision.draft is not None:
            await self._set_pending(session, user.user_id, OCRAmount(draft=decision.draft))
            return _reply(format_ocr_amount_prompt(decision.draft), llm_responses=responses)

        return _reply(OCR_CLARIFY_TEXT, llm_responses=responses)

    async def _handle_text_expense(
        self, session: AsyncSession, user: UserProfile, text: str, today: date,
    ) -> OrchestratorResult:
        from spendbot.bot.formatters import PARSE_FAILURE_TEXT, format_reconciliation

        responses: list[LLMResponse] = []
        parsed = parse_expense_text(text)
        # An item without letters ("100 2 bananas" -> "100") means the
        # last-number rule picked the wrong token.
        if parsed is not None and _LETTER_RE.search(parsed.item):
            item, price, hint = parsed.item, parsed.price, parsed.currency
        else:
            extracted = await self._extractor.extract_from_text(text)
            responses = extracted.llm_responses
            if not extracted.ok:
                return _reply(PARSE_FAILURE_TEXT, llm_responses=responses)
            item, price, hint = extracted.item, extracted.price, extracted.currency

        if hint and hint != user.currency:
            logger.info(
                "User %s mentioned %s; storing in preferred currency %s",
                user.user_id, hint, user.currency,
            )

        outcome = await add_expense(
            session,
            user.user_id,
            item=item,
            price=price,
            currency=user.currency,
            expense_date=today,
            today=today,
        )
        return _reply(format_reconciliation(outcome, today), llm_responses=responses)
