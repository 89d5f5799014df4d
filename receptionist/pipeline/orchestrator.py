"""Orchestrator: the single decision authority for a call turn.

One ``handle_turn`` call processes one recognized utterance:

    normalize → (micro-utterance shortcut) → classify + extract slots
    → triage (Tier 1 / Tier 2) → decide (signals, booking flow, Tier 3)
    → guardrails → (booking) → trace → reply

Precedence when deciding:
  1. tenant kill switch off → ``no_op``
  2. duplicate delivery of an already-answered turn → cached reply
  3. micro-utterance → confirmation handling or a canned acknowledgement
  4. emergency / wants-human → escalate, ending the call → end_call
  5. caller feels ignored or doubts us → leave the booking flow and
     reassure; escalate once it keeps happening
  6. reply to a pending confirmation prompt
  7. Tier 1 / Tier 2 scenario match
  8. active booking flow (handled here, never by the language model)
  9. Tier 3 fallback reasoner

Every failure becomes an outcome.  ``handle_turn`` never raises: component
errors map to a clarifying question, infrastructure errors fail closed to a
"please hold" escalation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from receptionist.booking.handler import BookingHandler
from receptionist.booking.store import AppointmentStore
from receptionist.errors import (
    BookingNotReadyError,
    FallbackError,
    StoreUnavailableError,
    TenantConfigError,
)
from receptionist.models.call import CallSession, CallState
from receptionist.models.decision import Action, Decision, MatchSource, TurnReply, TurnRequest
from receptionist.pipeline.classifier import Classification, classify
from receptionist.pipeline.fallback import FallbackReasoner
from receptionist.pipeline.guardrails import apply_guardrails
from receptionist.pipeline.normalizer import NormalizedTurn, normalize
from receptionist.pipeline.slots import (
    confirm_pending,
    extract_slots,
    merge_candidates,
    slot_summary,
)
from receptionist.pipeline.triage import TriageMatcher, TriageResult
from receptionist.session import SessionStore
from receptionist.tenants.loader import ConfigLoader
from receptionist.tenants.schema import EscalationPolicy
from receptionist.trace_events import (
    AuditSink,
    MemoryAuditSink,
    TraceEmitter,
    build_event,
    truncate,
    write_event,
)

log = logging.getLogger("receptionist.pipeline.orchestrator")

NEUTRAL_REPLY = "Sorry, could you say that one more time?"
_PLATFORM_ESCALATION = EscalationPolicy()


class _FormatValues(dict):
    def __missing__(self, key: str) -> str:
        return ""


@dataclass
class _Turn:
    """Working state of one turn, visible to the error handler."""

    request: TurnRequest
    session: Optional[CallSession] = None
    emitter: Optional[TraceEmitter] = None
    classification: Classification = field(default_factory=Classification)


class Orchestrator:
    def __init__(
        self,
        config_loader: ConfigLoader,
        session_store: SessionStore,
        appointment_store: AppointmentStore,
        fallback: FallbackReasoner | None = None,
        audit_sink: AuditSink | None = None,
        triage: TriageMatcher | None = None,
        final_write_timeout: float = 1.0,
    ) -> None:
        self._configs = config_loader
        self._sessions = session_store
        self._booking = BookingHandler(appointment_store)
        self._fallback = fallback
        self._sink = audit_sink or MemoryAuditSink()
        self._triage = triage or TriageMatcher()
        self._final_write_timeout = final_write_timeout

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    # ── Public API ─────────────────────────────────────────────

    async def handle_turn(self, request: TurnRequest) -> TurnReply:
        turn = _Turn(request=request)
        try:
            return await self._handle_turn(turn)
        except (StoreUnavailableError, TenantConfigError) as exc:
            log.critical("Failing closed for call %s (tenant=%s): %s",
                         request.call_id, request.tenant_id, exc)
            await self._trace_error(turn, exc)
            escalation = turn.session.config.escalation if turn.session else _PLATFORM_ESCALATION
            return TurnReply(
                reply_text=escalation.hold_message,
                action=Action.ESCALATE_TO_HUMAN,
                transfer_target=escalation.transfer_target,
            )
        except Exception as exc:
            log.exception("Turn failed for call %s", request.call_id)
            await self._trace_error(turn, exc)
            return TurnReply(
                reply_text=NEUTRAL_REPLY,
                action=Action.ASK_QUESTION,
                appointment_id=turn.session.appointment_ref if turn.session else None,
            )

    async def end_call(self, call_id: str) -> bool:
        return await self._sessions.mark_ended(call_id)

    async def get_session(self, call_id: str) -> Optional[CallSession]:
        return await self._sessions.get(call_id)

    # ── Turn ───────────────────────────────────────────────────

    async def _handle_turn(self, turn: _Turn) -> TurnReply:
        request = turn.request
        session = await self._load_session(request)
        turn.session = session
        config = session.config

        turn_seq = request.turn_seq if request.turn_seq is not None else session.turn_count + 1
        emitter = TraceEmitter(session, turn_seq, self._sink, self._final_write_timeout)
        turn.emitter = emitter

        if not config.features.pipeline_enabled:
            decision = Decision(action=Action.NO_OP, reason="pipeline_disabled")
            emitter.emit("decide", action=decision.action.value, reason=decision.reason)
            return await self._finish(session, request, emitter, decision)

        if (
            request.turn_seq is not None
            and session.last_turn_seq is not None
            and request.turn_seq <= session.last_turn_seq
            and session.last_reply is not None
        ):
            emitter.emit("duplicate_turn", action=session.last_reply.action.value,
                         lastTurnSeq=session.last_turn_seq)
            log.info("Duplicate turn %s for call %s; replaying reply",
                     request.turn_seq, session.call_id)
            await self._sessions.save(session)
            return session.last_reply

        session.turn_count += 1
        if session.state == CallState.NEW:
            session.state = CallState.IN_PROGRESS
        session.add_transcript("caller", request.utterance_text)
        asked_slot, session.last_asked_slot = session.last_asked_slot, None

        normalized = normalize(request.utterance_text, config)
        emitter.emit(
            "normalize",
            text=truncate(normalized.text, 200),
            isMicro=normalized.is_micro,
            polarity=normalized.polarity,
            removedFillers=normalized.removed_fillers,
        )

        if normalized.is_micro:
            decision = self._decide_micro(session, normalized, turn_seq)
        else:
            classification = classify(normalized.text, config)
            turn.classification = classification
            if classification.has("refused_slot") and asked_slot and asked_slot not in session.declined_slots:
                session.declined_slots.append(asked_slot)
            candidates = extract_slots(normalized.text, classification, turn_seq, asked_slot)
            changes = merge_candidates(session, candidates)
            emitter.emit("classify", **classification.to_trace(), slots=changes)

            triage = self._triage.match(normalized.text, config)
            emitter.emit(
                "triage",
                confidence=triage.confidence if triage.matched else None,
                match_source=triage.match_source.value if triage.match_source else None,
                **triage.to_trace(),
            )
            decision = await self._decide(session, normalized, classification, triage,
                                          changes, turn_seq, emitter)

        emitter.emit(
            "decide",
            action=decision.action.value,
            confidence=decision.confidence,
            match_source=decision.match_source.value,
            scenarioId=decision.scenario_id,
            reason=decision.reason,
        )

        guarded = apply_guardrails(decision, config, turn.classification, session.disclosures_made)
        session.disclosures_made.extend(guarded.disclosures)
        decision = guarded.decision
        emitter.emit("guardrail", action=decision.action.value, **guarded.to_trace())

        if decision.action == Action.INITIATE_BOOKING:
            decision = await self._book(session, decision, emitter)

        return await self._finish(session, request, emitter, decision)

    async def _load_session(self, request: TurnRequest) -> CallSession:
        session = await self._sessions.get(request.call_id)
        if session is None:
            config = await self._configs.load(request.tenant_id)
            session = CallSession(call_id=request.call_id, tenant_id=request.tenant_id, config=config)
            log.info("Session created: call=%s tenant=%s revision=%s",
                     request.call_id, request.tenant_id, config.revision or "-")
        elif session.tenant_id != request.tenant_id:
            raise TenantConfigError(
                request.tenant_id, f"call {request.call_id} belongs to another tenant"
            )
        return session

    async def _finish(
        self,
        session: CallSession,
        request: TurnRequest,
        emitter: TraceEmitter,
        decision: Decision,
    ) -> TurnReply:
        if decision.action == Action.ESCALATE_TO_HUMAN and session.state != CallState.BOOKED:
            session.state = CallState.ESCALATED
        elif decision.action == Action.END_CALL and session.state != CallState.BOOKED:
            session.state = CallState.ENDED
        if decision.action != Action.NO_OP:
            session.match_source = decision.match_source
        session.add_transcript("agent", decision.reply_text)

        reply = TurnReply(
            reply_text=decision.reply_text,
            action=decision.action,
            transfer_target=decision.transfer_target,
            appointment_id=session.appointment_ref,
        )
        if request.turn_seq is not None:
            session.last_turn_seq = request.turn_seq
        session.last_reply = reply

        await emitter.emit_final(
            action=decision.action.value,
            confidence=decision.confidence,
            match_source=decision.match_source.value,
            replyChars=len(reply.reply_text),
            appointmentId=reply.appointment_id,
            state=session.state.value,
        )
        await self._sessions.save(session)
        return reply

    async def _trace_error(self, turn: _Turn, exc: BaseException) -> None:
        data = {"error": type(exc).__name__, "message": truncate(str(exc), 200)}
        if turn.emitter is not None:
            turn.emitter.emit("error", **data)
            return
        # No session was loaded, so the event goes straight to the sink.
        request = turn.request
        event = build_event(request.call_id, request.tenant_id, request.turn_seq or 0,
                            "error", data=data)
        await write_event(self._sink, event, self._final_write_timeout)

    # ── Decisions ──────────────────────────────────────────────

    def _decide_micro(self, session: CallSession, normalized: NormalizedTurn, turn_seq: int) -> Decision:
        config = session.config
        if session.awaiting_confirmation and normalized.polarity > 0:
            promoted = confirm_pending(session, turn_seq)
            session.consent_given = True
            session.awaiting_confirmation = False
            log.info("Caller confirmed %s on call %s", promoted or "consent", session.call_id)
            return self._booking_step(session, MatchSource.ORCHESTRATOR_DIRECT, "confirmed")

        if session.awaiting_confirmation and normalized.polarity < 0:
            session.awaiting_confirmation = False
            return Decision(action=Action.ASK_QUESTION, reply_text=config.booking.correction_script,
                            reason="confirmation_declined")

        if self._booking_active(session):
            return self._booking_step(session, MatchSource.ORCHESTRATOR_DIRECT, "booking_flow")

        return Decision(action=Action.ASK_QUESTION, reply_text=config.escalation.acknowledgement,
                        reason="micro_utterance")

    async def _decide(
        self,
        session: CallSession,
        normalized: NormalizedTurn,
        classification: Classification,
        triage: TriageResult,
        changes: dict[str, list[str]],
        turn_seq: int,
        emitter: TraceEmitter,
    ) -> Decision:
        config = session.config
        escalation = config.escalation

        if classification.has("emergency"):
            return self._escalate(session, escalation.emergency_message, "emergency")
        if classification.has("wants_human"):
            return self._escalate(session, escalation.transfer_message, "wants_human")
        if classification.has("wants_to_end"):
            return Decision(action=Action.END_CALL, reply_text=escalation.closing_message,
                            reason="wants_to_end")

        if self._caller_frustrated(session, classification):
            if session.frustration_count >= escalation.frustration_limit:
                log.info("Caller frustrated %d times on call %s; escalating",
                         session.frustration_count, session.call_id)
                return self._escalate(session, escalation.frustration_message, "frustration")
            if classification.has("feels_ignored"):
                return Decision(action=Action.ASK_QUESTION, reply_text=escalation.reassurance_message,
                                reason="feels_ignored")
            if not triage.matched:
                return Decision(action=Action.ASK_QUESTION, reply_text=escalation.trust_message,
                                reason="trust_concern")
        elif classification.has("refused_slot") and classification.has("describes_problem"):
            # The caller would rather talk about the problem than give details.
            self._pause_booking(session, "refused_slot_with_problem")

        if session.awaiting_confirmation:
            if classification.has("affirmative"):
                confirm_pending(session, turn_seq)
                session.consent_given = True
                session.awaiting_confirmation = False
                return self._booking_step(session, MatchSource.ORCHESTRATOR_DIRECT, "confirmed")
            if classification.has("negative"):
                session.awaiting_confirmation = False
                if not changes["pending"]:
                    return Decision(action=Action.ASK_QUESTION,
                                    reply_text=config.booking.correction_script,
                                    reason="confirmation_declined")

        if classification.has("wants_booking"):
            if session.state == CallState.BOOKED:
                return Decision(action=Action.ANSWER_WITH_KNOWLEDGE,
                                reply_text=config.booking.already_booked_script,
                                reason="already_booked")
            session.booking_requested = True

        if triage.matched and config.features.scenario_auto_responses:
            return self._scenario_decision(session, triage)

        if self._booking_active(session):
            return self._booking_step(session, MatchSource.ORCHESTRATOR_DIRECT, "booking_flow")

        return await self._consult_fallback(session, normalized, classification, turn_seq, emitter)

    def _scenario_decision(self, session: CallSession, triage: TriageResult) -> Decision:
        config = session.config
        scenario = triage.scenario
        source = triage.match_source

        if scenario.action == Action.INITIATE_BOOKING or scenario.category == "booking":
            if session.state == CallState.BOOKED:
                return Decision(action=Action.ANSWER_WITH_KNOWLEDGE,
                                reply_text=config.booking.already_booked_script,
                                match_source=source, confidence=triage.confidence,
                                scenario_id=scenario.id, reason="already_booked")
            session.booking_requested = True
            step = self._booking_step(session, source, f"scenario:{scenario.id}")
            return step.model_copy(update={"confidence": triage.confidence, "scenario_id": scenario.id})

        reply = scenario.response_text or scenario.response_hint or config.escalation.clarifying_question
        decision = Decision(
            action=scenario.action,
            reply_text=reply,
            match_source=source,
            confidence=triage.confidence,
            scenario_id=scenario.id,
            reason=f"scenario:{scenario.id}",
        )
        if decision.action == Action.ESCALATE_TO_HUMAN:
            decision.transfer_target = config.escalation.transfer_target

        # Answer the question, then keep the booking moving.
        if decision.action == Action.ANSWER_WITH_KNOWLEDGE and self._booking_active(session):
            step = self._booking_step(session, source, decision.reason)
            if step.action == Action.ASK_QUESTION:
                decision.action = Action.ASK_QUESTION
                decision.reply_text = f"{reply} {step.reply_text}"
            elif step.action == Action.ESCALATE_TO_HUMAN:
                return step
        return decision

    async def _consult_fallback(
        self,
        session: CallSession,
        normalized: NormalizedTurn,
        classification: Classification,
        turn_seq: int,
        emitter: TraceEmitter,
    ) -> Decision:
        config = session.config
        if not config.features.fallback_enabled or self._fallback is None:
            return Decision(action=Action.ASK_QUESTION,
                            reply_text=config.escalation.clarifying_question,
                            reason="fallback_disabled")
        try:
            outcome = await self._fallback.decide(normalized.text, session, classification, turn_seq)
        except FallbackError as exc:
            raw = getattr(exc, "raw_response", "")
            emitter.emit(
                f"fallback_decision_due_to_{exc.trace_reason}",
                action=Action.ASK_QUESTION.value,
                error=str(exc),
                rawResponse=raw,
            )
            log.warning("Fallback failed for call %s (%s): %s",
                        session.call_id, exc.trace_reason, exc)
            return Decision(action=Action.ASK_QUESTION,
                            reply_text=config.escalation.clarifying_question,
                            reason=f"fallback_{exc.trace_reason}")

        changes = merge_candidates(session, outcome.slots)
        decision = outcome.decision
        emitter.emit(
            "fallback",
            action=decision.action.value,
            confidence=decision.confidence,
            match_source=decision.match_source.value,
            latencyMs=outcome.latency_ms,
            slots=changes,
        )

        if decision.action == Action.INITIATE_BOOKING:
            # The model may ask for a booking; the booking gate still decides.
            session.booking_requested = True
            step = self._booking_step(session, MatchSource.FALLBACK_LLM, "fallback_booking")
            return step.model_copy(update={"confidence": decision.confidence})
        if decision.action == Action.ESCALATE_TO_HUMAN:
            decision.transfer_target = config.escalation.transfer_target
        return decision

    # ── Booking flow ───────────────────────────────────────────

    def _booking_active(self, session: CallSession) -> bool:
        return session.booking_requested and session.state == CallState.IN_PROGRESS

    def _pause_booking(self, session: CallSession, reason: str) -> None:
        if session.booking_requested or session.awaiting_confirmation:
            log.info("Booking flow paused on call %s (%s)", session.call_id, reason)
        session.booking_requested = False
        session.awaiting_confirmation = False

    def _caller_frustrated(self, session: CallSession, classification: Classification) -> bool:
        """Count a turn where the caller feels ignored or doubts us, and leave the booking flow."""
        if not (classification.has("feels_ignored") or classification.has("trust_concern")):
            return False
        session.frustration_count += 1
        self._pause_booking(session, "feels_ignored" if classification.has("feels_ignored")
                            else "trust_concern")
        return True

    def _escalate(self, session: CallSession, message: str, reason: str,
                  source: MatchSource = MatchSource.ORCHESTRATOR_DIRECT) -> Decision:
        return Decision(
            action=Action.ESCALATE_TO_HUMAN,
            reply_text=message,
            match_source=source,
            transfer_target=session.config.escalation.transfer_target,
            reason=reason,
        )

    def _booking_step(self, session: CallSession, source: MatchSource, reason: str) -> Decision:
        """Next step of the booking flow: ask, confirm, ask consent, or book."""
        config = session.config
        policy = config.booking

        if session.state == CallState.BOOKED:
            return Decision(action=Action.ANSWER_WITH_KNOWLEDGE,
                            reply_text=policy.already_booked_script,
                            match_source=source, reason="already_booked")

        missing = session.missing_slots()
        if missing:
            askable = [s for s in missing if s not in session.declined_slots]
            if not askable:
                log.info("All remaining slots declined on call %s; escalating", session.call_id)
                return self._escalate(session, config.escalation.loop_message, "slots_declined", source)
            slot = askable[0]
            asked = session.slot_ask_counts.get(slot, 0)
            if asked >= policy.max_same_question:
                log.info("Slot %s asked %d times on call %s; escalating", slot, asked, session.call_id)
                return self._escalate(session, config.escalation.loop_message, f"loop:{slot}", source)
            session.slot_ask_counts[slot] = asked + 1
            session.last_asked_slot = slot
            return Decision(action=Action.ASK_QUESTION, reply_text=config.slot_prompt(slot),
                            match_source=source, reason=f"{reason}:ask:{slot}")

        if session.unconfirmed_slots():
            session.awaiting_confirmation = True
            names = list(policy.required_slots) + [
                s for s in ("phone", "time_window") if s not in policy.required_slots and session.slot_value(s)
            ]
            summary = slot_summary(session, names)
            return Decision(action=Action.ASK_QUESTION,
                            reply_text=policy.confirmation_script.format_map(_FormatValues(summary=summary)),
                            match_source=source, reason=f"{reason}:confirm")

        if config.consent.require_explicit_confirmation and not session.consent_given:
            session.awaiting_confirmation = True
            return Decision(action=Action.ASK_QUESTION, reply_text=policy.consent_script,
                            match_source=source, reason=f"{reason}:consent")

        return Decision(action=Action.INITIATE_BOOKING, match_source=source, reason=f"{reason}:book")

    async def _book(self, session: CallSession, decision: Decision, emitter: TraceEmitter) -> Decision:
        config = session.config
        try:
            result = await self._booking.book(session)
        except BookingNotReadyError as exc:
            emitter.emit("book", action=decision.action.value, error="not_ready", missing=exc.missing)
            log.warning("Booking attempted before slots confirmed on call %s: %s",
                        session.call_id, exc.missing)
            return self._booking_step(session, decision.match_source, "not_ready")
        except StoreUnavailableError as exc:
            log.critical("Appointment store unavailable for call %s: %s", session.call_id, exc)
            emitter.emit("book", action=Action.ESCALATE_TO_HUMAN.value, error="store_unavailable",
                         message=truncate(str(exc), 200))
            return self._escalate(session, config.escalation.hold_message, "store_unavailable",
                                  decision.match_source)

        session.state = CallState.BOOKED
        session.awaiting_confirmation = False
        appointment = result.appointment
        emitter.emit("book", action=decision.action.value, appointmentId=appointment.id,
                     created=result.created, priority=appointment.priority,
                     urgencyScore=appointment.urgency_score)

        values = _FormatValues(
            time_window=appointment.time_window if appointment.time_window != "TBD"
            else "the first available time",
            name=appointment.contact_name,
            address=appointment.address,
            problem=appointment.problem,
            appointment_id=appointment.id,
        )
        text = config.booking.success_script.format_map(values)
        if decision.reply_text:
            # Disclosures appended by the guardrail stage follow the confirmation.
            text = f"{text} {decision.reply_text}"
        return decision.model_copy(update={"reply_text": text})
