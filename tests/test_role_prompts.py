import json

import pytest

from models import GeneralPhysicianResponse, SpecialistDoctorResponse, StageName
from role_prompts import (
    SPECIALTY_FOCUS,
    PromptConfigurationError,
    prompt_for,
    schema_example,
    specialty_variant,
)


def test_every_role_has_a_prompt_naming_itself():
    for stage in StageName:
        if stage == StageName.SPECIALIST_DOCTOR:
            prompt = prompt_for(stage, "Cardiologist")
        else:
            prompt = prompt_for(stage)
        assert "exactly one JSON object" in prompt
        assert '"disclaimer"' in prompt


def test_prompt_accepts_role_string():
    prompt = prompt_for("general_physician")

    assert f'"{GeneralPhysicianResponse.ROLE_NAME}"' in prompt
    assert "recommended_specialist_type" in prompt


def test_unknown_role_raises():
    with pytest.raises(PromptConfigurationError, match="Unknown diagnosis chain role"):
        prompt_for("radiologist")


def test_specialist_prompt_requires_specialty():
    with pytest.raises(PromptConfigurationError, match="specialist type"):
        prompt_for(StageName.SPECIALIST_DOCTOR)
    with pytest.raises(PromptConfigurationError):
        prompt_for(StageName.SPECIALIST_DOCTOR, "   ")


def test_specialist_prompt_adds_known_focus():
    prompt = prompt_for(StageName.SPECIALIST_DOCTOR, "Cardiology")

    assert "You are a Cardiology AI" in prompt
    assert SPECIALTY_FOCUS["cardiologist"] in prompt


def test_specialist_prompt_without_variant_uses_generic_text():
    prompt = prompt_for(StageName.SPECIALIST_DOCTOR, "Allergist")

    assert 'Set specialist_type to "Allergist"' in prompt
    assert not any(focus in prompt for focus in SPECIALTY_FOCUS.values())


def test_specialty_variant_normalises_aliases():
    assert specialty_variant("  Neurology ") == "neurologist"
    assert specialty_variant("Infectious   Disease") == "infectious disease specialist"
    assert specialty_variant("Podiatrist") is None


def test_schema_example_covers_every_field():
    skeleton = json.loads(schema_example(SpecialistDoctorResponse))

    assert set(skeleton) == set(SpecialistDoctorResponse.model_fields)
    assert isinstance(skeleton["specialized_assessment_and_potential_conditions"], list)
    assert set(skeleton["specialized_assessment_and_potential_conditions"][0]) == {
        "condition_hypothesis",
        "reasoning",
        "symptoms_match",
    }
