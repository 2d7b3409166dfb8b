"""
Radiance AI Chain Diagnosis Service - Data Models

Pydantic contracts for:
- Session lifecycle and stage bookkeeping
- Patient input payload
- Per-role stage responses (with legacy-shape adapters)
- Completion backend results
- API request/response payloads
"""

from __future__ import annotations

import typing
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


MISSING_TEXT_PLACEHOLDER = "Not provided in this analysis."

STANDARD_DISCLAIMER = (
    "This information is AI-generated for educational purposes only and is not a "
    "substitute for professional medical advice, diagnosis, or treatment. Always "
    "consult a qualified healthcare provider about any medical concern."
)


# =============================================================================
# ENUMS
# =============================================================================


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class StageName(str, Enum):
    MEDICAL_ANALYST = "medical_analyst"
    GENERAL_PHYSICIAN = "general_physician"
    SPECIALIST_DOCTOR = "specialist_doctor"
    PATHOLOGIST = "pathologist"
    NUTRITIONIST = "nutritionist"
    PHARMACIST = "pharmacist"
    FOLLOW_UP_SPECIALIST = "follow_up_specialist"
    SUMMARIZER = "summarizer"

    @property
    def step(self) -> int:
        return STAGE_ORDER.index(self) + 1

    @property
    def response_field(self) -> str:
        return f"{self.value}_response"

    @property
    def raw_field(self) -> str:
        return f"raw_{self.value}_response"

    @classmethod
    def for_step(cls, step: int) -> "StageName":
        if step < 1 or step > len(STAGE_ORDER):
            raise ValueError(f"No stage for step {step}; valid steps are 1..{len(STAGE_ORDER)}.")
        return STAGE_ORDER[step - 1]


STAGE_ORDER: List[StageName] = [
    StageName.MEDICAL_ANALYST,
    StageName.GENERAL_PHYSICIAN,
    StageName.SPECIALIST_DOCTOR,
    StageName.PATHOLOGIST,
    StageName.NUTRITIONIST,
    StageName.PHARMACIST,
    StageName.FOLLOW_UP_SPECIALIST,
    StageName.SUMMARIZER,
]
FINAL_STEP = len(STAGE_ORDER)


class AgentRunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# =============================================================================
# PATIENT INPUT MODELS
# =============================================================================


class UserDetails(BaseModel):
    id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    country: str = ""
    state: str = ""
    city: str = ""
    zip_code: str = ""
    gender: str = ""
    birth_year: Optional[int] = None
    age: Optional[int] = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part).strip()


class HealthMetrics(BaseModel):
    height: Optional[float] = Field(default=None, description="Height in centimetres")
    weight: Optional[float] = Field(default=None, description="Weight in kilograms")
    bmi: Optional[float] = None
    dietary_preference: str = "Not specified"

    @model_validator(mode="after")
    def _derive_bmi(self) -> "HealthMetrics":
        if self.bmi is None:
            self.bmi = calculate_bmi(self.height, self.weight)
        return self


class SymptomsInfo(BaseModel):
    symptoms_list: List[str] = Field(default_factory=list)
    description: str = ""
    duration: str = ""


class MedicalInfo(BaseModel):
    allergies: List[str] = Field(default_factory=list)
    medications: List[str] = Field(default_factory=list)
    medical_conditions: List[str] = Field(default_factory=list)
    health_history: str = ""


class MedicalReport(BaseModel):
    text: Optional[str] = None
    image_url: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return bool((self.text or "").strip())

    @property
    def has_image(self) -> bool:
        return bool((self.image_url or "").strip())


class UserInput(BaseModel):
    user_details: UserDetails = Field(default_factory=UserDetails)
    health_metrics: HealthMetrics = Field(default_factory=HealthMetrics)
    symptoms_info: SymptomsInfo = Field(default_factory=SymptomsInfo)
    medical_info: MedicalInfo = Field(default_factory=MedicalInfo)
    medical_report: Optional[MedicalReport] = None

    @property
    def has_report(self) -> bool:
        report = self.medical_report
        return report is not None and (report.has_text or report.has_image)


def calculate_bmi(height_cm: Optional[float], weight_kg: Optional[float]) -> Optional[float]:
    if not height_cm or not weight_kg or height_cm <= 0 or weight_kg <= 0:
        return None
    height_m = height_cm / 100.0
    return round(weight_kg / (height_m * height_m), 1)


# =============================================================================
# STAGE RESPONSE SHAPE COERCION
# =============================================================================


def _is_model_type(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return "; ".join(f"{k}: {_text(v)}" for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return "; ".join(_text(item) for item in value if item is not None)
    return str(value)


def _coerce_value(annotation: Any, value: Any) -> Any:
    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)

    if origin is typing.Union:
        if value is None:
            return None
        inner = [arg for arg in args if arg is not type(None)]
        return _coerce_value(inner[0], value) if inner else value

    if annotation is str:
        return _text(value)

    if annotation is int:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None

    if origin in (list, List):
        item_type = args[0] if args else Any
        if value is None:
            return []
        if isinstance(value, str):
            return [_coerce_value(item_type, value)] if value.strip() else []
        if isinstance(value, dict):
            if _is_model_type(item_type):
                return [_coerce_value(item_type, value)]
            return [f"{k}: {_text(v)}" for k, v in value.items()]
        if isinstance(value, (list, tuple)):
            return [_coerce_value(item_type, item) for item in value if item is not None]
        return [_coerce_value(item_type, value)]

    if origin in (dict, Dict):
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): _text(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return {f"item_{idx + 1}": _text(item) for idx, item in enumerate(value)}
        text = _text(value)
        return {"summary": text} if text.strip() else {}

    if _is_model_type(annotation):
        return coerce_model_payload(annotation, value if isinstance(value, dict) else {})

    return value


def coerce_model_payload(model_cls: Type[BaseModel], payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Coerces a loosely-typed dict onto the field types of `model_cls`.

    Absent fields become their empty value ("" / [] / {} / None for optionals),
    so the result always validates.
    """
    out: Dict[str, Any] = {}
    for name, field in model_cls.model_fields.items():
        out[name] = _coerce_value(field.annotation, payload.get(name))
    return out


ResponseT = TypeVar("ResponseT", bound="StageResponse")


class StageResponse(BaseModel):
    """
    Shared shape convention for every role's response.

    Subclasses declare the role label, the reference sub-field that receives
    free text when structured parsing fails, and the markdown section labels
    the extractor can map onto list fields.
    """

    ROLE_NAME: ClassVar[str] = ""
    STAGE: ClassVar[Optional[StageName]] = None
    REFERENCE_TEXT_FIELD: ClassVar[str] = ""
    RAW_REFERENCE_FIELD: ClassVar[Optional[str]] = None
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {}
    SUMMARY_FIELD: ClassVar[Optional[str]] = None

    @classmethod
    def from_partial(cls: Type[ResponseT], payload: Optional[Dict[str, Any]]) -> ResponseT:
        data = payload if isinstance(payload, dict) else {}
        try:
            return cls.model_validate(coerce_model_payload(cls, data))
        except ValidationError:
            return cls.model_validate(coerce_model_payload(cls, {}))

    @classmethod
    def fallback_payload(cls, text: str) -> Dict[str, Any]:
        reference: Dict[str, Any] = {cls.REFERENCE_TEXT_FIELD: bounded_prefix(text, 1000)}
        if cls.RAW_REFERENCE_FIELD:
            reference[cls.RAW_REFERENCE_FIELD] = bounded_prefix(text, 1000)
        return {
            "role_name": cls.ROLE_NAME,
            "reference_data_for_next_role": reference,
        }

    @classmethod
    def adapt_legacy(cls, payload: Dict[str, Any]) -> Dict[str, Any]:
        return dict(payload)


def bounded_prefix(text: str, limit: int) -> str:
    value = text or ""
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


# =============================================================================
# STAGE 1: MEDICAL ANALYST
# =============================================================================


class ImageAnalysis(BaseModel):
    image_description: str
    visible_findings: List[str]
    possible_abnormalities: List[str]


class MedicalAnalystReference(BaseModel):
    analyst_summary: str
    raw_findings_ref: str


class MedicalAnalystResponse(StageResponse):
    ROLE_NAME: ClassVar[str] = "Medical Analyst AI (Radiance AI)"
    STAGE: ClassVar[Optional[StageName]] = StageName.MEDICAL_ANALYST
    REFERENCE_TEXT_FIELD: ClassVar[str] = "analyst_summary"
    RAW_REFERENCE_FIELD: ClassVar[Optional[str]] = "raw_findings_ref"
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {
        "key_findings_from_report": ("findings", "observations", "analysis"),
        "abnormalities_highlighted": ("abnormalit", "concern", "issue"),
        "clinical_correlation_points_for_gp": ("correlation", "recommendation"),
    }
    SUMMARY_FIELD: ClassVar[Optional[str]] = "analyst_summary"

    role_name: str
    report_type_analyzed: str
    image_analysis: Optional[ImageAnalysis] = None
    key_findings_from_report: List[str]
    abnormalities_highlighted: List[str]
    clinical_correlation_points_for_gp: List[str]
    disclaimer: str
    reference_data_for_next_role: MedicalAnalystReference

    @classmethod
    def fallback_payload(cls, text: str) -> Dict[str, Any]:
        payload = super().fallback_payload(text)
        payload["reference_data_for_next_role"]["analyst_summary"] = bounded_prefix(text, 500)
        return payload


# =============================================================================
# STAGE 2: GENERAL PHYSICIAN
# =============================================================================


class PatientSummaryReview(BaseModel):
    name: str
    age: Optional[int] = None
    key_symptoms: List[str]
    relevant_history: List[str]


class GeneralPhysicianReference(BaseModel):
    gp_summary_of_case: str
    gp_reason_for_specialist_referral: str
    analyst_ref_if_any: Optional[str] = None


class GeneralPhysicianResponse(StageResponse):
    ROLE_NAME: ClassVar[str] = "General Physician AI (Radiance AI)"
    STAGE: ClassVar[Optional[StageName]] = StageName.GENERAL_PHYSICIAN
    REFERENCE_TEXT_FIELD: ClassVar[str] = "gp_summary_of_case"
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {
        "preliminary_symptom_analysis": ("symptom analysis", "analysis"),
        "potential_areas_of_concern": ("concern",),
        "general_initial_advice": ("advice",),
        "questions_for_specialist_consultation": ("question",),
    }

    role_name: str
    patient_summary_review: PatientSummaryReview
    medical_analyst_findings_summary: str
    preliminary_symptom_analysis: List[str]
    potential_areas_of_concern: List[str]
    recommended_specialist_type: Optional[str] = None
    general_initial_advice: List[str]
    questions_for_specialist_consultation: List[str]
    disclaimer: str
    reference_data_for_next_role: GeneralPhysicianReference


# =============================================================================
# STAGE 3: SPECIALIST DOCTOR
# =============================================================================


class SpecialistCaseReview(BaseModel):
    key_information_from_gp_referral: str
    medical_analyst_data_consideration: str
    specialist_focus_points: List[str]


class ConditionHypothesis(BaseModel):
    condition_hypothesis: str
    reasoning: str
    symptoms_match: List[str]


class ManagementApproach(BaseModel):
    further_investigations_suggested: List[str]
    general_management_principles: List[str]
    lifestyle_and_supportive_care_notes: List[str]


class SpecialistReference(BaseModel):
    specialist_assessment_summary: str
    potential_conditions_for_lab_investigation: List[str]
    recommended_tests_from_specialist: List[str]


class SpecialistDoctorResponse(StageResponse):
    ROLE_NAME: ClassVar[str] = "Specialist Doctor AI (Radiance AI)"
    STAGE: ClassVar[Optional[StageName]] = StageName.SPECIALIST_DOCTOR
    REFERENCE_TEXT_FIELD: ClassVar[str] = "specialist_assessment_summary"
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {
        "key_takeaways_for_patient": ("takeaway", "summary"),
    }

    role_name: str
    specialist_type: str
    patient_case_review_from_specialist_viewpoint: SpecialistCaseReview
    specialized_assessment_and_potential_conditions: List[ConditionHypothesis]
    recommended_diagnostic_and_management_approach: ManagementApproach
    key_takeaways_for_patient: List[str]
    disclaimer: str
    reference_data_for_next_role: SpecialistReference


# =============================================================================
# STAGE 4: PATHOLOGIST
# =============================================================================


class PathologistReference(BaseModel):
    pathology_summary: str
    key_lab_considerations: List[str]


class PathologistResponse(StageResponse):
    ROLE_NAME: ClassVar[str] = "Pathologist AI (Radiance AI)"
    STAGE: ClassVar[Optional[StageName]] = StageName.PATHOLOGIST
    REFERENCE_TEXT_FIELD: ClassVar[str] = "pathology_summary"
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {}

    role_name: str
    lab_tests_relevance: Dict[str, str]
    findings_interpretation: Dict[str, str]
    pathologist_recommendations: Dict[str, str]
    disclaimer: str
    reference_data_for_next_role: PathologistReference

    _LEGACY_KEYS: ClassVar[Dict[str, str]] = {
        "lab_tests": "lab_tests_relevance",
        "findings": "findings_interpretation",
        "recommendations": "pathologist_recommendations",
    }

    @classmethod
    def adapt_legacy(cls, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(payload)
        for legacy_key, current_key in cls._LEGACY_KEYS.items():
            if legacy_key in data:
                legacy_value = data.pop(legacy_key)
                if not data.get(current_key):
                    data[current_key] = legacy_value
        return data


# =============================================================================
# STAGE 5: NUTRITIONIST
# =============================================================================


class NutritionistReference(BaseModel):
    nutrition_summary: str
    dietary_restrictions: List[str]


class NutritionistResponse(StageResponse):
    ROLE_NAME: ClassVar[str] = "Nutritionist AI (Radiance AI)"
    STAGE: ClassVar[Optional[StageName]] = StageName.NUTRITIONIST
    REFERENCE_TEXT_FIELD: ClassVar[str] = "nutrition_summary"
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {
        "foods_to_include": ("include", "recommended foods"),
        "foods_to_avoid": ("avoid",),
        "lifestyle_tips": ("lifestyle",),
        "nutrition_recommendations": ("recommendation",),
    }

    role_name: str
    dietary_preference: str
    specialist_direction: str
    medical_conditions: List[str]
    current_symptoms: List[str]
    current_medications: List[str]
    potential_diagnoses: List[str]
    nutrition_recommendations: List[str]
    foods_to_include: List[str]
    foods_to_avoid: List[str]
    lifestyle_tips: List[str]
    notes: str
    disclaimer: str
    reference_data_for_next_role: NutritionistReference

    @classmethod
    def adapt_legacy(cls, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(payload)
        # Older records duplicated patient demographics into this response.
        for key in ("patient_id", "name", "age", "gender", "location"):
            data.pop(key, None)
        return data


# =============================================================================
# STAGE 6: PHARMACIST
# =============================================================================


class MedicationOption(BaseModel):
    name: str
    drug_class: str
    indication: str
    notes: str


class MedicationCaution(BaseModel):
    name: str
    reason: str


class AllergyConsideration(BaseModel):
    allergen: str
    relevance: str


class PharmacistReference(BaseModel):
    medication_summary: str
    interaction_warnings: List[str]


class PharmacistResponse(StageResponse):
    ROLE_NAME: ClassVar[str] = "Pharmacist AI (Radiance AI)"
    STAGE: ClassVar[Optional[StageName]] = StageName.PHARMACIST
    REFERENCE_TEXT_FIELD: ClassVar[str] = "medication_summary"
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {
        "general_advice": ("advice",),
    }

    role_name: str
    potential_medications: List[MedicationOption]
    medications_to_avoid: List[MedicationCaution]
    allergy_considerations: List[AllergyConsideration]
    general_advice: List[str]
    disclaimer: str
    reference_data_for_next_role: PharmacistReference

    @classmethod
    def adapt_legacy(cls, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(payload)
        medications = data.get("potential_medications")
        if isinstance(medications, list):
            adapted = []
            for item in medications:
                if isinstance(item, dict) and "class" in item:
                    item = dict(item)
                    legacy_class = item.pop("class")
                    item.setdefault("drug_class", legacy_class)
                adapted.append(item)
            data["potential_medications"] = adapted
        return data


# =============================================================================
# STAGE 7: FOLLOW-UP SPECIALIST
# =============================================================================


class CaseProgression(BaseModel):
    initial_concern: str
    key_insights_from_ais: List[str]


class SymptomMonitoring(BaseModel):
    track_daily: List[str]
    use_symptom_diary: str
    photo_documentation: str


class DietaryGuidance(BaseModel):
    general_approach: str
    avoid: List[str]
    ensure: str


class FollowUpRecommendations(BaseModel):
    symptom_monitoring: SymptomMonitoring
    follow_up_timeline: Dict[str, str]
    medication_guidance: Dict[str, str]
    dietary_recommendations: DietaryGuidance
    urgent_care_indicators: List[str]
    next_steps: Dict[str, str]


class FollowUpReference(BaseModel):
    follow_up_summary: str
    red_flag_symptoms: List[str]


class FollowUpSpecialistResponse(StageResponse):
    ROLE_NAME: ClassVar[str] = "Follow-up Specialist AI (Radiance AI)"
    STAGE: ClassVar[Optional[StageName]] = StageName.FOLLOW_UP_SPECIALIST
    REFERENCE_TEXT_FIELD: ClassVar[str] = "follow_up_summary"
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {}

    role_name: str
    synthesis_of_case_progression: CaseProgression
    follow_up_recommendations: FollowUpRecommendations
    disclaimer: str
    reference_data_for_next_role: FollowUpReference

    @classmethod
    def adapt_legacy(cls, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(payload)
        recommendations = data.get("follow_up_recommendations")
        if isinstance(recommendations, dict):
            recommendations = dict(recommendations)
            urgent = recommendations.get("urgent_care_indicators")
            if isinstance(urgent, dict):
                recommendations["urgent_care_indicators"] = urgent.get("seek_immediate_care_for", [])
            data["follow_up_recommendations"] = recommendations
        synthesis = data.get("synthesis_of_case_progression")
        if isinstance(synthesis, dict) and isinstance(synthesis.get("key_insights_from_ais"), str):
            synthesis = dict(synthesis)
            synthesis["key_insights_from_ais"] = [synthesis["key_insights_from_ais"]]
            data["synthesis_of_case_progression"] = synthesis
        return data


# =============================================================================
# STAGE 8: SUMMARIZER
# =============================================================================


class SummaryMedicationGuidance(BaseModel):
    current_medications: List[str]
    medications_to_avoid: List[str]
    potential_medications: List[str]


class SummaryDietaryRecommendations(BaseModel):
    foods_to_include: List[str]
    foods_to_avoid: List[str]


class FollowUpPlan(BaseModel):
    timeline: str
    specialist_referral: str
    documentation_needed: str


class SummarizerReference(BaseModel):
    final_summary: str


class SummarizerResponse(StageResponse):
    ROLE_NAME: ClassVar[str] = "Summarizer AI (Radiance AI)"
    STAGE: ClassVar[Optional[StageName]] = StageName.SUMMARIZER
    REFERENCE_TEXT_FIELD: ClassVar[str] = "final_summary"
    SECTION_LABELS: ClassVar[Dict[str, Tuple[str, ...]]] = {
        "primary_concerns": ("concern",),
        "potential_diagnoses": ("diagnos",),
        "recommended_tests": ("test",),
        "lifestyle_recommendations": ("lifestyle",),
    }

    role_name: str
    patient_id: str
    patient_name: str
    age: Optional[int] = None
    gender: str
    date_of_report: str
    summary_of_condition: str
    primary_concerns: List[str]
    potential_diagnoses: List[str]
    recommended_tests: List[str]
    medication_guidance: SummaryMedicationGuidance
    dietary_recommendations: SummaryDietaryRecommendations
    lifestyle_recommendations: List[str]
    follow_up_plan: FollowUpPlan
    urgent_care_indicators: List[str]
    disclaimer: str
    reference_data_for_next_role: SummarizerReference


RESPONSE_MODELS: Dict[StageName, Type[StageResponse]] = {
    StageName.MEDICAL_ANALYST: MedicalAnalystResponse,
    StageName.GENERAL_PHYSICIAN: GeneralPhysicianResponse,
    StageName.SPECIALIST_DOCTOR: SpecialistDoctorResponse,
    StageName.PATHOLOGIST: PathologistResponse,
    StageName.NUTRITIONIST: NutritionistResponse,
    StageName.PHARMACIST: PharmacistResponse,
    StageName.FOLLOW_UP_SPECIALIST: FollowUpSpecialistResponse,
    StageName.SUMMARIZER: SummarizerResponse,
}


# =============================================================================
# SESSION
# =============================================================================


class AgentTrace(BaseModel):
    agent: str
    status: AgentRunStatus
    started_at: datetime
    completed_at: datetime
    notes: Optional[str] = None


class ChainDiagnosisSession(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    user_input: UserInput
    status: SessionStatus = SessionStatus.IN_PROGRESS
    current_step: int = 0
    error_message: Optional[str] = None

    medical_analyst_response: Optional[MedicalAnalystResponse] = None
    raw_medical_analyst_response: Optional[str] = None
    general_physician_response: Optional[GeneralPhysicianResponse] = None
    raw_general_physician_response: Optional[str] = None
    specialist_doctor_response: Optional[SpecialistDoctorResponse] = None
    raw_specialist_doctor_response: Optional[str] = None
    pathologist_response: Optional[PathologistResponse] = None
    raw_pathologist_response: Optional[str] = None
    nutritionist_response: Optional[NutritionistResponse] = None
    raw_nutritionist_response: Optional[str] = None
    pharmacist_response: Optional[PharmacistResponse] = None
    raw_pharmacist_response: Optional[str] = None
    follow_up_specialist_response: Optional[FollowUpSpecialistResponse] = None
    raw_follow_up_specialist_response: Optional[str] = None
    summarizer_response: Optional[SummarizerResponse] = None
    raw_summarizer_response: Optional[str] = None

    traces: List[AgentTrace] = Field(default_factory=list)
    # In-memory only; never written to the session store.
    persistence_warnings: List[str] = Field(default_factory=list)

    def response_for(self, stage: StageName) -> Optional[StageResponse]:
        return getattr(self, stage.response_field)

    def raw_response_for(self, stage: StageName) -> Optional[str]:
        return getattr(self, stage.raw_field)

    @property
    def next_stage(self) -> Optional[StageName]:
        if self.current_step >= FINAL_STEP:
            return None
        return StageName.for_step(self.current_step + 1)

    def to_store_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"persistence_warnings"})


def load_session_payload(payload: Dict[str, Any]) -> ChainDiagnosisSession:
    """
    Builds a session from a stored record, adapting legacy stage-response
    shapes once at this boundary.
    """
    data = dict(payload)
    data.pop("persistence_warnings", None)
    for stage, response_cls in RESPONSE_MODELS.items():
        stored = data.get(stage.response_field)
        if isinstance(stored, dict):
            data[stage.response_field] = response_cls.from_partial(response_cls.adapt_legacy(stored))
        elif stored is not None:
            data[stage.response_field] = None
    return ChainDiagnosisSession.model_validate(data)


# =============================================================================
# COMPLETION BACKEND MODELS
# =============================================================================


class PromptPart(BaseModel):
    text: Optional[str] = None
    image_url: Optional[str] = None


class CompletionUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResult(BaseModel):
    id: str = ""
    model: str
    created_at: datetime = Field(default_factory=utc_now)
    content: str = ""
    usage: CompletionUsage = Field(default_factory=CompletionUsage)


class CompletionChunk(BaseModel):
    delta: str = ""
    is_final: bool = False


# =============================================================================
# API MODELS
# =============================================================================


class StartSessionResponse(BaseModel):
    success: bool
    session_id: str
    status: SessionStatus
    current_step: int
    next_stage: Optional[StageName] = None
    warnings: List[str] = Field(default_factory=list)
    message: str


class StageRunResponse(BaseModel):
    success: bool
    session_id: str
    stage: StageName
    status: SessionStatus
    current_step: int
    next_stage: Optional[StageName] = None
    response: Optional[Dict[str, Any]] = None
    warnings: List[str] = Field(default_factory=list)


class SessionResponse(BaseModel):
    success: bool
    session: ChainDiagnosisSession


class SessionListResponse(BaseModel):
    success: bool
    user_id: str
    sessions: List[ChainDiagnosisSession] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    service: str
    session_store_backend: str
    completion_base_url: str
    timestamp: datetime
