"""
System prompts for each stage of the diagnosis chain.

Provides:
- per-role instruction text
- a JSON skeleton for each role, derived from its response model
- specialty variants for the Specialist Doctor stage
"""

from __future__ import annotations

import json
import typing
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel

from models import RESPONSE_MODELS, STANDARD_DISCLAIMER, StageName


class PromptConfigurationError(ValueError):
    """Raised when a prompt is requested for an unknown role or without a required specialty."""


FORMATTING_RULES = (
    "Output rules: respond with exactly one JSON object and nothing else. "
    "Do not wrap it in markdown fences, do not add commentary before or after it, "
    "and do not include reasoning tags. Use double quotes for every key and string. "
    "Every key in the skeleton must be present; use an empty list or a short explanatory "
    "string instead of omitting a key. Keep list items concise. "
    f'The "disclaimer" field must state: "{STANDARD_DISCLAIMER}"'
)

ROLE_INSTRUCTIONS: Dict[StageName, str] = {
    StageName.MEDICAL_ANALYST: (
        "You are the Medical Analyst AI of Radiance AI. You receive a patient's medical report "
        "as text and/or an image, together with their profile and symptoms. Identify the report "
        "type, list the key findings, highlight values or observations outside normal ranges, "
        "and note the clinical correlation points a General Physician should review. When an "
        "image is supplied, describe it and fill image_analysis. Do not diagnose. Condense the "
        "findings into reference_data_for_next_role.analyst_summary and keep the most relevant "
        "raw findings in raw_findings_ref."
    ),
    StageName.GENERAL_PHYSICIAN: (
        "You are the General Physician AI of Radiance AI. Review the patient's details, symptoms, "
        "history and any Medical Analyst reference data. If no_medical_report is true, base your "
        "review on the symptoms and history alone and say so in medical_analyst_findings_summary. "
        "Give a preliminary symptom analysis, areas of concern and initial general advice. "
        "You must choose exactly one specialist for referral and put its job title (for example "
        '"Cardiologist", "Neurologist", "Dermatologist") in recommended_specialist_type. '
        "Summarise the case and your referral reason in reference_data_for_next_role."
    ),
    StageName.PATHOLOGIST: (
        "You are the Pathologist AI of Radiance AI. Using the Specialist, General Physician and "
        "Medical Analyst reference data, explain which laboratory tests are relevant and why "
        "(lab_tests_relevance), how existing findings could be interpreted "
        "(findings_interpretation), and your recommendations (pathologist_recommendations). "
        "Each of these three fields is an object mapping a short label to an explanation."
    ),
    StageName.NUTRITIONIST: (
        "You are the Nutritionist AI of Radiance AI. Using the patient's health metrics, dietary "
        "preference, conditions and the Specialist and Pathologist reference data, give "
        "nutrition recommendations, foods to include, foods to avoid and lifestyle tips that "
        "respect the dietary preference. Note any dietary restrictions in "
        "reference_data_for_next_role.dietary_restrictions."
    ),
    StageName.PHARMACIST: (
        "You are the Pharmacist AI of Radiance AI. Using the patient's current medications and "
        "allergies and the Specialist, Pathologist and Nutritionist reference data, describe "
        "medication classes that may be considered (never prescribe doses), medications to "
        "avoid and why, allergy considerations and general medication advice. List possible "
        "drug, food or allergy interactions in reference_data_for_next_role.interaction_warnings."
    ),
    StageName.FOLLOW_UP_SPECIALIST: (
        "You are the Follow-up Specialist AI of Radiance AI. Synthesise the reference data of "
        "every previous role into a follow-up plan: what to monitor daily, when to follow up and "
        "with whom, medication and dietary guidance, urgent-care indicators and next steps. "
        "follow_up_timeline, medication_guidance and next_steps are objects mapping a short label "
        "to text. Put red-flag symptoms in reference_data_for_next_role.red_flag_symptoms."
    ),
    StageName.SUMMARIZER: (
        "You are the Summarizer AI of Radiance AI. Using the patient's details and the reference "
        "data of every previous role, write a clear, patient-friendly final report: a summary of "
        "the condition, primary concerns, potential diagnoses, recommended tests, medication and "
        "dietary guidance, lifestyle recommendations, a follow-up plan and urgent-care "
        "indicators. Use today's date for date_of_report."
    ),
}

SPECIALIST_BASE_INSTRUCTION = (
    "You are a {specialty} AI of Radiance AI, receiving a referral from the General Physician AI. "
    "Set specialist_type to \"{specialty}\". Review the General Physician and Medical Analyst "
    "reference data from a {specialty}'s viewpoint, list your focus points, propose condition "
    "hypotheses with reasoning and matching symptoms, and recommend further investigations, "
    "management principles and supportive care. Summarise your assessment, the conditions "
    "worth lab investigation and the tests you recommend in reference_data_for_next_role."
)

SPECIALTY_FOCUS: Dict[str, str] = {
    "cardiologist": (
        "Focus on cardiovascular causes: chest pain patterns, palpitations, blood pressure, "
        "lipid profile, ECG and echocardiography findings."
    ),
    "neurologist": (
        "Focus on neurological causes: headache red flags, focal deficits, seizures, "
        "neuropathy and indications for neuroimaging."
    ),
    "dermatologist": (
        "Focus on skin, hair and nail presentations: lesion morphology, distribution, "
        "triggers and indications for biopsy."
    ),
    "gastroenterologist": (
        "Focus on digestive causes: abdominal pain, bowel habit changes, liver function "
        "and indications for endoscopy."
    ),
    "pulmonologist": (
        "Focus on respiratory causes: cough, dyspnoea, oxygenation, spirometry and chest imaging."
    ),
    "endocrinologist": (
        "Focus on hormonal and metabolic causes: glucose control, thyroid function, "
        "adrenal and weight-related disorders."
    ),
    "rheumatologist": (
        "Focus on joint and autoimmune causes: inflammatory markers, joint distribution "
        "and systemic features."
    ),
    "infectious disease specialist": (
        "Focus on infectious causes: fever patterns, exposures, travel history and "
        "appropriate cultures or serology."
    ),
    "nephrologist": (
        "Focus on kidney causes: renal function, electrolytes, urinalysis and blood pressure."
    ),
    "psychiatrist": (
        "Focus on mental health: mood, anxiety, sleep, substance use and risk assessment."
    ),
}

_SPECIALTY_ALIASES: Dict[str, str] = {
    "cardiology": "cardiologist",
    "neurology": "neurologist",
    "dermatology": "dermatologist",
    "gastroenterology": "gastroenterologist",
    "pulmonology": "pulmonologist",
    "endocrinology": "endocrinologist",
    "rheumatology": "rheumatologist",
    "infectious disease": "infectious disease specialist",
    "nephrology": "nephrologist",
    "psychiatry": "psychiatrist",
}


# ---- Public API ----


def prompt_for(role: Union[StageName, str], sub_specialty: Optional[str] = None) -> str:
    stage = _resolve_stage(role)
    response_cls = RESPONSE_MODELS[stage]
    if stage == StageName.SPECIALIST_DOCTOR:
        instruction = _specialist_instruction(sub_specialty)
    else:
        instruction = ROLE_INSTRUCTIONS[stage]
    return "\n\n".join(
        [
            instruction,
            FORMATTING_RULES,
            f'Set "role_name" to "{response_cls.ROLE_NAME}". JSON skeleton:',
            schema_example(response_cls),
        ]
    )


def specialty_variant(sub_specialty: str) -> Optional[str]:
    """Returns the canonical specialty key with a dedicated focus, if any."""
    key = " ".join((sub_specialty or "").lower().split())
    key = _SPECIALTY_ALIASES.get(key, key)
    return key if key in SPECIALTY_FOCUS else None


def schema_example(model_cls: Type[BaseModel]) -> str:
    return json.dumps(_example_for_model(model_cls), indent=2)


# ---- Helpers ----


def _resolve_stage(role: Union[StageName, str]) -> StageName:
    if isinstance(role, StageName):
        return role
    try:
        return StageName(str(role).strip().lower())
    except ValueError:
        raise PromptConfigurationError(f"Unknown diagnosis chain role: {role!r}") from None


def _specialist_instruction(sub_specialty: Optional[str]) -> str:
    specialty = " ".join((sub_specialty or "").split())
    if not specialty:
        raise PromptConfigurationError("Specialist Doctor prompt requires a specialist type.")
    instruction = SPECIALIST_BASE_INSTRUCTION.format(specialty=specialty)
    variant = specialty_variant(specialty)
    if variant:
        instruction += " " + SPECIALTY_FOCUS[variant]
    return instruction


def _example_for_model(model_cls: Type[BaseModel]) -> Dict[str, Any]:
    return {name: _example_for(field.annotation) for name, field in model_cls.model_fields.items()}


def _example_for(annotation: Any) -> Any:
    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)
    if origin is typing.Union:
        inner = [arg for arg in args if arg is not type(None)]
        return _example_for(inner[0]) if inner else None
    if origin is list:
        return [_example_for(args[0])] if args else []
    if origin is dict:
        return {"label": "explanation"}
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return _example_for_model(annotation)
    if annotation is int:
        return 0
    return ""
