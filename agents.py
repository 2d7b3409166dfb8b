"""
Radiance AI Chain Diagnosis Service - Stage Processors & Orchestrator

Pipeline:
  Stage 1  Medical Analyst       (only when a report text/image was supplied)
  Stage 2  General Physician
  Stage 3  Specialist Doctor     (specialty chosen by Stage 2)
  Stage 4  Pathologist
  Stage 5  Nutritionist
  Stage 6  Pharmacist
  Stage 7  Follow-up Specialist
  Stage 8  Summarizer

Each stage builds its prompt from the patient input plus the
`reference_data_for_next_role` of earlier stages, calls the completion
backend, runs the reply through the tolerant extractor, backfills missing
fields and persists both the typed and the raw response.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import typing
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel

from completion_client import (
    ChunkHandler,
    CompletionClient,
    CompletionError,
    UserPrompt,
    notify_chunk,
)
from env_loader import load_service_env
from json_extractor import extract
from models import (
    MISSING_TEXT_PLACEHOLDER,
    RESPONSE_MODELS,
    STAGE_ORDER,
    STANDARD_DISCLAIMER,
    AgentRunStatus,
    AgentTrace,
    ChainDiagnosisSession,
    CompletionChunk,
    PromptPart,
    SessionStatus,
    StageName,
    StageResponse,
    UserInput,
    bounded_prefix,
    utc_now,
)
from role_prompts import prompt_for
from session_repository import SessionPersistenceError, build_session_repository
from session_store import ContextIdentityProvider, PersistOutcome, SessionStore

load_service_env()

logger = logging.getLogger(__name__)

DEFAULT_STAGE_MODELS: Dict[StageName, str] = {
    StageName.MEDICAL_ANALYST: "sonar-deep-research",
    StageName.GENERAL_PHYSICIAN: "sonar-pro",
    StageName.SPECIALIST_DOCTOR: "sonar-reasoning-pro",
    StageName.PATHOLOGIST: "sonar-pro",
    StageName.NUTRITIONIST: "sonar-pro",
    StageName.PHARMACIST: "sonar-pro",
    StageName.FOLLOW_UP_SPECIALIST: "sonar-pro",
    StageName.SUMMARIZER: "sonar-pro",
}

STREAMING_FALLBACK_NOTICE = "Streaming failed, falling back to standard request...\n"


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class MissingPrerequisiteError(ValueError):
    """A stage cannot run because an earlier stage did not supply what it needs."""


# =============================================================================
# DEFAULTING PASS
# =============================================================================


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _merge_missing(target: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in defaults.items():
        current = target.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            target[key] = _merge_missing(dict(current), value)
        elif _is_blank(current) or current == [] or current == {}:
            target[key] = value
    return target


def _fill_required(model_cls: Type[Any], data: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(data)
    for name, field in model_cls.model_fields.items():
        annotation = field.annotation
        value = out.get(name)
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            out[name] = _fill_required(annotation, value if isinstance(value, dict) else {})
            continue
        if typing.get_origin(annotation) is list and isinstance(value, list):
            item_types = typing.get_args(annotation)
            item_type = item_types[0] if item_types else None
            if isinstance(item_type, type) and issubclass(item_type, BaseModel):
                out[name] = [_fill_required(item_type, v) if isinstance(v, dict) else v for v in value]
            continue
        if annotation is str and field.is_required() and _is_blank(value):
            out[name] = MISSING_TEXT_PLACEHOLDER
    return out


def apply_required_defaults(
    response_cls: Type[StageResponse],
    payload: Dict[str, Any],
    overrides: Optional[Dict[str, Any]] = None,
) -> StageResponse:
    """
    Backfills every required field so the response is always renderable.

    Stage-specific `overrides` win over generic placeholders but never over
    values the model actually produced.
    """
    data = dict(payload) if isinstance(payload, dict) else {}
    base_defaults: Dict[str, Any] = {
        "role_name": response_cls.ROLE_NAME,
        "disclaimer": STANDARD_DISCLAIMER,
    }
    data = _merge_missing(data, base_defaults)
    if overrides:
        data = _merge_missing(data, overrides)
    return response_cls.from_partial(_fill_required(response_cls, data))


# =============================================================================
# STAGE PROCESSORS
# =============================================================================


class StageProcessor:
    """
    Builds prompts and stage-specific defaults for one role.

    `forwards` lists the earlier stages whose reference data is threaded into
    this stage's prompt. The Medical Analyst is always optional; every other
    forwarded stage must already have a response.
    """

    stage: StageName
    forwards: Tuple[StageName, ...] = ()
    user_input_fields: Tuple[str, ...] = ("user_details", "health_metrics", "symptoms_info", "medical_info")

    @property
    def response_cls(self) -> Type[StageResponse]:
        return RESPONSE_MODELS[self.stage]

    def system_prompt(self, session: ChainDiagnosisSession) -> str:
        return prompt_for(self.stage)

    def context(self, session: ChainDiagnosisSession) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "user_input": session.user_input.model_dump(mode="json", include=set(self.user_input_fields)),
        }
        for prior in self.forwards:
            response = session.response_for(prior)
            if response is None:
                if prior == StageName.MEDICAL_ANALYST:
                    continue
                raise MissingPrerequisiteError(
                    f"{self.stage.value} requires the {prior.value} response, which is not available."
                )
            data[f"reference_data_from_{prior.value}"] = response.reference_data_for_next_role.model_dump(
                mode="json"
            )
        return data

    def user_prompt(self, session: ChainDiagnosisSession) -> UserPrompt:
        return json.dumps(self.context(session), indent=2, ensure_ascii=False)

    def has_image_content(self, session: ChainDiagnosisSession) -> bool:
        return False

    def defaults(self, session: ChainDiagnosisSession, raw_text: str) -> Dict[str, Any]:
        return {}


class MedicalAnalystProcessor(StageProcessor):
    stage = StageName.MEDICAL_ANALYST
    user_input_fields = ("user_details", "health_metrics", "symptoms_info", "medical_info", "medical_report")

    def has_image_content(self, session: ChainDiagnosisSession) -> bool:
        report = session.user_input.medical_report
        return report is not None and report.has_image

    def user_prompt(self, session: ChainDiagnosisSession) -> UserPrompt:
        text = super().user_prompt(session)
        if not self.has_image_content(session):
            return text
        image_url = (session.user_input.medical_report.image_url or "").strip()
        if not re.match(r"^https?://", image_url, flags=re.IGNORECASE):
            raise ValueError("Medical report image URL must be an http(s) URL.")
        return [PromptPart(text=text), PromptPart(image_url=image_url)]

    def defaults(self, session: ChainDiagnosisSession, raw_text: str) -> Dict[str, Any]:
        report = session.user_input.medical_report
        return {
            "report_type_analyzed": (report.type if report and report.type else "Medical Report"),
            "key_findings_from_report": ["See full analysis in the reference data"],
            "clinical_correlation_points_for_gp": ["Please review the full analysis"],
            "reference_data_for_next_role": {
                "analyst_summary": bounded_prefix(raw_text, 500),
                "raw_findings_ref": bounded_prefix(raw_text, 1000),
            },
        }


class GeneralPhysicianProcessor(StageProcessor):
    stage = StageName.GENERAL_PHYSICIAN
    forwards = (StageName.MEDICAL_ANALYST,)

    def context(self, session: ChainDiagnosisSession) -> Dict[str, Any]:
        data = super().context(session)
        data["no_medical_report"] = session.medical_analyst_response is None
        return data

    def defaults(self, session: ChainDiagnosisSession, raw_text: str) -> Dict[str, Any]:
        details = session.user_input.user_details
        analyst = session.medical_analyst_response
        return {
            "patient_summary_review": {
                "name": details.full_name or MISSING_TEXT_PLACEHOLDER,
                "age": details.age,
                "key_symptoms": list(session.user_input.symptoms_info.symptoms_list),
            },
            "medical_analyst_findings_summary": (
                analyst.reference_data_for_next_role.analyst_summary
                if analyst is not None
                else "No medical report was provided."
            ),
            "reference_data_for_next_role": {
                "gp_summary_of_case": bounded_prefix(raw_text, 500) or MISSING_TEXT_PLACEHOLDER,
                "analyst_ref_if_any": (
                    analyst.reference_data_for_next_role.analyst_summary if analyst is not None else None
                ),
            },
        }


class SpecialistDoctorProcessor(StageProcessor):
    stage = StageName.SPECIALIST_DOCTOR
    forwards = (StageName.GENERAL_PHYSICIAN, StageName.MEDICAL_ANALYST)

    @staticmethod
    def specialty(session: ChainDiagnosisSession) -> str:
        gp = session.general_physician_response
        specialty = " ".join(((gp.recommended_specialist_type if gp else None) or "").split())
        if not specialty:
            raise MissingPrerequisiteError(
                "Specialist type is required from the General Physician response "
                "(recommended_specialist_type is missing)."
            )
        return specialty

    def system_prompt(self, session: ChainDiagnosisSession) -> str:
        return prompt_for(self.stage, self.specialty(session))

    def context(self, session: ChainDiagnosisSession) -> Dict[str, Any]:
        data = super().context(session)
        data["specialist_type"] = self.specialty(session)
        return data

    def defaults(self, session: ChainDiagnosisSession, raw_text: str) -> Dict[str, Any]:
        return {
            "specialist_type": self.specialty(session),
            "reference_data_for_next_role": {
                "specialist_assessment_summary": bounded_prefix(raw_text, 500) or MISSING_TEXT_PLACEHOLDER,
            },
        }


class PathologistProcessor(StageProcessor):
    stage = StageName.PATHOLOGIST
    forwards = (StageName.SPECIALIST_DOCTOR, StageName.GENERAL_PHYSICIAN, StageName.MEDICAL_ANALYST)
    user_input_fields = ("user_details", "symptoms_info", "medical_info")


class NutritionistProcessor(StageProcessor):
    stage = StageName.NUTRITIONIST
    forwards = (StageName.SPECIALIST_DOCTOR, StageName.PATHOLOGIST)

    def defaults(self, session: ChainDiagnosisSession, raw_text: str) -> Dict[str, Any]:
        user_input = session.user_input
        specialist = session.specialist_doctor_response
        return {
            "dietary_preference": user_input.health_metrics.dietary_preference,
            "specialist_direction": (
                specialist.reference_data_for_next_role.specialist_assessment_summary
                if specialist is not None
                else MISSING_TEXT_PLACEHOLDER
            ),
            "medical_conditions": list(user_input.medical_info.medical_conditions),
            "current_symptoms": list(user_input.symptoms_info.symptoms_list),
            "current_medications": list(user_input.medical_info.medications),
        }


class PharmacistProcessor(StageProcessor):
    stage = StageName.PHARMACIST
    forwards = (StageName.SPECIALIST_DOCTOR, StageName.PATHOLOGIST, StageName.NUTRITIONIST)
    user_input_fields = ("user_details", "symptoms_info", "medical_info")


class FollowUpSpecialistProcessor(StageProcessor):
    stage = StageName.FOLLOW_UP_SPECIALIST
    forwards = tuple(STAGE_ORDER[:6])

    def defaults(self, session: ChainDiagnosisSession, raw_text: str) -> Dict[str, Any]:
        symptoms = session.user_input.symptoms_info
        concern = ", ".join(symptoms.symptoms_list) or symptoms.description
        return {"synthesis_of_case_progression": {"initial_concern": concern or MISSING_TEXT_PLACEHOLDER}}


class SummarizerProcessor(StageProcessor):
    stage = StageName.SUMMARIZER
    forwards = tuple(STAGE_ORDER[:7])

    def defaults(self, session: ChainDiagnosisSession, raw_text: str) -> Dict[str, Any]:
        details = session.user_input.user_details
        medical_info = session.user_input.medical_info
        return {
            "patient_id": details.id or session.user_id or MISSING_TEXT_PLACEHOLDER,
            "patient_name": details.full_name or MISSING_TEXT_PLACEHOLDER,
            "age": details.age,
            "gender": details.gender or MISSING_TEXT_PLACEHOLDER,
            "date_of_report": datetime.now(timezone.utc).date().isoformat(),
            "medication_guidance": {"current_medications": list(medical_info.medications)},
            "reference_data_for_next_role": {
                "final_summary": bounded_prefix(raw_text, 500) or MISSING_TEXT_PLACEHOLDER,
            },
        }


STAGE_PROCESSORS: Tuple[StageProcessor, ...] = (
    MedicalAnalystProcessor(),
    GeneralPhysicianProcessor(),
    SpecialistDoctorProcessor(),
    PathologistProcessor(),
    NutritionistProcessor(),
    PharmacistProcessor(),
    FollowUpSpecialistProcessor(),
    SummarizerProcessor(),
)


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class ChainDiagnosisOrchestrator:
    """
    Sequences the eight stages for each session and owns session bookkeeping.

    Sessions are cached in memory so a diagnosis keeps progressing when the
    session store is unavailable.
    """

    def __init__(
        self,
        completion_client: Optional[CompletionClient] = None,
        session_store: Optional[SessionStore] = None,
        stage_models: Optional[Dict[StageName, str]] = None,
    ) -> None:
        self.completion_client = completion_client or CompletionClient()
        self.session_store = session_store or SessionStore(
            build_session_repository(),
            identity_provider=ContextIdentityProvider(),
        )
        self.stage_models: Dict[StageName, str] = {}
        for stage in STAGE_ORDER:
            env_model = (os.getenv(f"RADIANCE_MODEL_{stage.value.upper()}") or "").strip()
            self.stage_models[stage] = env_model or DEFAULT_STAGE_MODELS[stage]
        if stage_models:
            self.stage_models.update(stage_models)
        self.streaming_enabled = _env_bool("RADIANCE_STREAMING_ENABLED", True)
        self.stage_timeout_seconds = max(5.0, _env_float("RADIANCE_STAGE_TIMEOUT_SECONDS", 180.0))
        self.processors: Dict[StageName, StageProcessor] = {p.stage: p for p in STAGE_PROCESSORS}
        self._sessions: Dict[str, ChainDiagnosisSession] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}

        logger.info(
            "ChainDiagnosisOrchestrator initialized | store=%s | streaming=%s | stage_timeout=%.1fs | models=%s",
            self.session_store.backend_name,
            self.streaming_enabled,
            self.stage_timeout_seconds,
            ",".join(f"{stage.value}={model}" for stage, model in self.stage_models.items()),
        )

    # ---- Session lifecycle ----

    def initialize_session(self, user_input: UserInput, user_id: Optional[str] = None) -> ChainDiagnosisSession:
        owner = self.session_store.current_user_id() or user_id or user_input.user_details.id
        session = ChainDiagnosisSession(user_id=owner, user_input=user_input)
        self._record_outcome(session, self.session_store.create(session))
        self._sessions[session.id] = session
        logger.info("Chain diagnosis session %s created for user=%s", session.id, owner)

        if not user_input.has_report:
            self._skip_medical_analyst(session)
        return session

    def get_session(self, session_id: str) -> Optional[ChainDiagnosisSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        session = self.session_store.get_by_id(session_id)
        if session is not None:
            self._sessions[session.id] = session
        return session

    def can_read(self, session: ChainDiagnosisSession) -> bool:
        """Owner-only reads once a caller identity is bound."""
        caller = self.session_store.current_user_id()
        return caller is None or caller == session.user_id

    def list_sessions(self, user_id: str) -> List[ChainDiagnosisSession]:
        merged: Dict[str, ChainDiagnosisSession] = {s.id: s for s in self.session_store.list_by_user(user_id)}
        for session in self._sessions.values():
            if session.user_id == user_id:
                merged[session.id] = session
        return sorted(merged.values(), key=lambda s: s.created_at, reverse=True)

    # ---- Stage execution ----

    async def run_stage(
        self,
        session_id: str,
        stage: Union[StageName, str],
        *,
        on_chunk: Optional[ChunkHandler] = None,
        streaming: Optional[bool] = None,
    ) -> Optional[StageResponse]:
        """
        Runs one stage and returns its typed response.

        Returns None only when the Medical Analyst stage is skipped for lack
        of a report.
        """
        stage = StageName(stage)
        session = self._get_session_or_raise(session_id)
        async with self._lock_for(session_id):
            self._ensure_runnable(session, stage)
            if stage == StageName.MEDICAL_ANALYST and not session.user_input.has_report:
                self._skip_medical_analyst(session)
                return None
            return await self._execute_stage(session, stage, on_chunk=on_chunk, streaming=streaming)

    async def run_next_stage(
        self,
        session_id: str,
        *,
        on_chunk: Optional[ChunkHandler] = None,
        streaming: Optional[bool] = None,
    ) -> ChainDiagnosisSession:
        session = self._get_session_or_raise(session_id)
        stage = session.next_stage
        if stage is None:
            raise ValueError(f"Session {session_id} has already completed all stages.")
        await self.run_stage(session_id, stage, on_chunk=on_chunk, streaming=streaming)
        return session

    async def retry_stage(
        self,
        session_id: str,
        *,
        on_chunk: Optional[ChunkHandler] = None,
        streaming: Optional[bool] = None,
    ) -> ChainDiagnosisSession:
        """Clears a halted session's error and re-runs the stage that failed."""
        session = self._get_session_or_raise(session_id)
        async with self._lock_for(session_id):
            if session.status != SessionStatus.ERROR:
                raise ValueError(f"Session {session_id} is not halted; nothing to retry.")
            session.status = SessionStatus.IN_PROGRESS
            session.error_message = None
            self._persist(session, {"status": session.status, "error_message": None})
        return await self.run_next_stage(session_id, on_chunk=on_chunk, streaming=streaming)

    async def run_full_chain(
        self,
        user_input: UserInput,
        user_id: Optional[str] = None,
        *,
        on_chunk: Optional[ChunkHandler] = None,
    ) -> ChainDiagnosisSession:
        session = self.initialize_session(user_input, user_id=user_id)
        while session.status == SessionStatus.IN_PROGRESS and session.next_stage is not None:
            stage = session.next_stage
            try:
                await self.run_stage(session.id, stage, on_chunk=on_chunk)
            except Exception as exc:
                logger.warning("Chain diagnosis %s halted at %s: %s", session.id, stage.value, exc)
                break
        return session

    async def stream_next_stage(self, session_id: str) -> AsyncIterator[CompletionChunk]:
        """
        Runs the next stage, yielding completion chunks as they arrive.

        Closing the generator early cancels the stage.
        """
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self.run_next_stage(session_id, on_chunk=queue.put))
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break
            while not queue.empty():
                yield queue.get_nowait()
            await task
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    def model_for(self, stage: StageName) -> str:
        return self.stage_models[stage]

    # ---- Internals ----

    async def _execute_stage(
        self,
        session: ChainDiagnosisSession,
        stage: StageName,
        *,
        on_chunk: Optional[ChunkHandler],
        streaming: Optional[bool],
    ) -> StageResponse:
        processor = self.processors[stage]
        started_at = utc_now()
        try:
            system_prompt = processor.system_prompt(session)
            user_prompt = processor.user_prompt(session)
            raw_text = await self._complete(
                stage,
                system_prompt,
                user_prompt,
                has_image_content=processor.has_image_content(session),
                on_chunk=on_chunk,
                streaming=streaming,
            )

            extraction = extract(raw_text, processor.response_cls)
            response = apply_required_defaults(
                processor.response_cls,
                extraction.payload,
                processor.defaults(session, raw_text),
            )

            status = SessionStatus.COMPLETED if stage == StageName.SUMMARIZER else session.status
            trace = AgentTrace(
                agent=processor.response_cls.ROLE_NAME,
                status=AgentRunStatus.COMPLETED,
                started_at=started_at,
                completed_at=utc_now(),
                notes=f"model={self.model_for(stage)} | parse={extraction.strategy}",
            )
            self._persist(
                session,
                {
                    stage.response_field: response,
                    stage.raw_field: raw_text,
                    "current_step": stage.step,
                    "status": status,
                    "traces": [t.model_dump(mode="json") for t in [*session.traces, trace]],
                },
            )
        except asyncio.CancelledError:
            logger.info("Stage %s cancelled for session %s.", stage.value, session.id)
            self._halt(session, stage, started_at, "Stage cancelled before completion.")
            raise
        except Exception as exc:
            logger.warning("Stage %s failed for session %s: %s", stage.value, session.id, exc)
            self._halt(session, stage, started_at, f"{stage.value} failed: {exc}")
            raise

        setattr(session, stage.response_field, response)
        setattr(session, stage.raw_field, raw_text)
        session.current_step = stage.step
        session.status = status
        session.traces.append(trace)
        session.updated_at = utc_now()
        logger.info(
            "Stage %s completed for session %s (step=%d, parse=%s)",
            stage.value,
            session.id,
            session.current_step,
            extraction.strategy,
        )
        return response

    async def _complete(
        self,
        stage: StageName,
        system_prompt: str,
        user_prompt: UserPrompt,
        *,
        has_image_content: bool,
        on_chunk: Optional[ChunkHandler],
        streaming: Optional[bool],
    ) -> str:
        model = self.model_for(stage)
        use_streaming = self.streaming_enabled if streaming is None else streaming
        if has_image_content and use_streaming:
            # Image-bearing requests always go out as a single batch request.
            use_streaming = False

        if use_streaming:
            try:
                result = await self._with_timeout(
                    stage,
                    self.completion_client.complete(
                        model, system_prompt, user_prompt, streaming=True, on_chunk=on_chunk
                    ),
                )
                return result.content
            except CompletionError as exc:
                logger.warning("Streaming failed for %s; retrying as a standard request: %s", stage.value, exc)
                if on_chunk is not None:
                    await notify_chunk(on_chunk, CompletionChunk(delta=STREAMING_FALLBACK_NOTICE))

        result = await self._with_timeout(
            stage,
            self.completion_client.complete(
                model,
                system_prompt,
                user_prompt,
                streaming=False,
                has_image_content=has_image_content,
            ),
        )
        if on_chunk is not None:
            await notify_chunk(on_chunk, CompletionChunk(delta=result.content, is_final=True))
        return result.content

    async def _with_timeout(self, stage: StageName, coro: typing.Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.stage_timeout_seconds)
        except asyncio.TimeoutError:
            raise CompletionError(
                f"Completion for {stage.value} timed out after {self.stage_timeout_seconds:.0f}s."
            ) from None

    def _skip_medical_analyst(self, session: ChainDiagnosisSession) -> None:
        now = utc_now()
        trace = AgentTrace(
            agent=RESPONSE_MODELS[StageName.MEDICAL_ANALYST].ROLE_NAME,
            status=AgentRunStatus.SKIPPED,
            started_at=now,
            completed_at=now,
            notes="No medical report text or image supplied.",
        )
        step = StageName.MEDICAL_ANALYST.step
        self._persist(
            session,
            {
                "current_step": step,
                "traces": [t.model_dump(mode="json") for t in [*session.traces, trace]],
            },
        )
        session.current_step = step
        session.traces.append(trace)

    def _halt(self, session: ChainDiagnosisSession, stage: StageName, started_at: datetime, message: str) -> None:
        session.status = SessionStatus.ERROR
        session.error_message = message
        session.updated_at = utc_now()
        session.traces.append(
            AgentTrace(
                agent=RESPONSE_MODELS[stage].ROLE_NAME,
                status=AgentRunStatus.FAILED,
                started_at=started_at,
                completed_at=utc_now(),
                notes=message,
            )
        )
        try:
            self._persist(
                session,
                {
                    "status": session.status,
                    "error_message": message,
                    "traces": [t.model_dump(mode="json") for t in session.traces],
                },
            )
        except SessionPersistenceError as exc:
            logger.warning("Could not persist halted state for session %s: %s", session.id, exc)

    def _persist(self, session: ChainDiagnosisSession, fields: Dict[str, Any]) -> PersistOutcome:
        outcome = self.session_store.update(session.id, fields)
        self._record_outcome(session, outcome)
        return outcome

    @staticmethod
    def _record_outcome(session: ChainDiagnosisSession, outcome: PersistOutcome) -> None:
        if outcome.warning:
            session.persistence_warnings.append(outcome.warning)

    def _ensure_runnable(self, session: ChainDiagnosisSession, stage: StageName) -> None:
        if session.status == SessionStatus.ERROR:
            raise ValueError(
                f"Session {session.id} is halted ({session.error_message}); retry the failed stage first."
            )
        if session.status == SessionStatus.COMPLETED:
            raise ValueError(f"Session {session.id} has already completed all stages.")
        expected = session.next_stage
        if stage != expected:
            raise ValueError(
                f"Stage {stage.value} cannot run for session {session.id}; "
                f"next stage is {expected.value if expected else 'none'}."
            )

    def _get_session_or_raise(self, session_id: str) -> ChainDiagnosisSession:
        session = self.get_session(session_id)
        if session is None:
            raise KeyError(f"Session not found: {session_id}. Start a session first via /chain/sessions.")
        return session

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock


orchestrator_agent = ChainDiagnosisOrchestrator()
