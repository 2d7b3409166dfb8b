import copy
import json
import os
import sys
import tempfile
from pathlib import Path

import pytest


SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ["RADIANCE_SESSION_STORE_BACKEND"] = "sqlite"
os.environ["RADIANCE_SESSION_STORE_ALLOW_DEGRADED"] = "true"
os.environ["RADIANCE_STREAMING_ENABLED"] = "false"
os.environ["RADIANCE_STAGE_TIMEOUT_SECONDS"] = "10"
os.environ["RADIANCE_COMPLETION_API_KEY"] = "test-key"
os.environ["RADIANCE_COMPLETION_BASE_URL"] = "https://completion.test"
os.environ.pop("RADIANCE_ENV_FILE", None)

_TEST_DATA_DIR = Path(tempfile.gettempdir()) / "radiance-chain-service-tests"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ["RADIANCE_LOCAL_DATA_DIR"] = str(_TEST_DATA_DIR)
os.environ["RADIANCE_SQLITE_DB_PATH"] = str(_TEST_DATA_DIR / "chain_sessions.sqlite3")


STAGE_REPLIES = {
    "medical_analyst": {
        "report_type_analyzed": "Blood Test",
        "key_findings_from_report": ["Hemoglobin 10.2 g/dL (low)"],
        "abnormalities_highlighted": ["Mild anemia"],
        "clinical_correlation_points_for_gp": ["Correlate with reported fatigue"],
        "reference_data_for_next_role": {
            "analyst_summary": "Mild anemia on CBC.",
            "raw_findings_ref": "Hb 10.2",
        },
    },
    "general_physician": {
        "patient_summary_review": {
            "name": "Ada Lovelace",
            "age": 36,
            "key_symptoms": ["chest pain", "fatigue"],
            "relevant_history": ["hypertension"],
        },
        "medical_analyst_findings_summary": "Mild anemia.",
        "preliminary_symptom_analysis": ["Exertional chest discomfort"],
        "potential_areas_of_concern": ["Cardiac ischemia"],
        "recommended_specialist_type": "Cardiologist",
        "general_initial_advice": ["Avoid strenuous exercise until reviewed"],
        "questions_for_specialist_consultation": ["Is a stress test indicated?"],
        "reference_data_for_next_role": {
            "gp_summary_of_case": "Chest pain with fatigue in a hypertensive adult.",
            "gp_reason_for_specialist_referral": "Rule out cardiac cause.",
        },
    },
    "specialist_doctor": {
        "specialist_type": "Cardiologist",
        "specialized_assessment_and_potential_conditions": [
            {
                "condition_hypothesis": "Stable angina",
                "reasoning": "Exertional pattern",
                "symptoms_match": ["chest pain"],
            }
        ],
        "key_takeaways_for_patient": ["Seek care if pain occurs at rest"],
        "reference_data_for_next_role": {
            "specialist_assessment_summary": "Likely stable angina.",
            "potential_conditions_for_lab_investigation": ["Stable angina"],
            "recommended_tests_from_specialist": ["Troponin", "Lipid panel"],
        },
    },
    "pathologist": {
        "lab_tests_relevance": {"Troponin": "Excludes myocardial injury"},
        "findings_interpretation": {"Hemoglobin": "Mild anemia may worsen angina"},
        "pathologist_recommendations": {"Iron studies": "Clarify anemia cause"},
        "reference_data_for_next_role": {
            "pathology_summary": "Check troponin, lipids and iron studies.",
            "key_lab_considerations": ["Anemia"],
        },
    },
    "nutritionist": {
        "nutrition_recommendations": ["Mediterranean-style diet"],
        "foods_to_include": ["Leafy greens", "Legumes"],
        "foods_to_avoid": ["Processed meats"],
        "lifestyle_tips": ["Walk daily"],
        "reference_data_for_next_role": {
            "nutrition_summary": "Heart-healthy, iron-rich diet.",
            "dietary_restrictions": ["Low sodium"],
        },
    },
    "pharmacist": {
        "potential_medications": [
            {
                "name": "Aspirin",
                "drug_class": "Antiplatelet",
                "indication": "Angina",
                "notes": "Discuss with your doctor",
            }
        ],
        "medications_to_avoid": [{"name": "Ibuprofen", "reason": "Raises blood pressure"}],
        "allergy_considerations": [],
        "general_advice": ["Keep a medication list"],
        "reference_data_for_next_role": {
            "medication_summary": "Antiplatelet may be considered.",
            "interaction_warnings": ["NSAIDs"],
        },
    },
    "follow_up_specialist": {
        "synthesis_of_case_progression": {
            "initial_concern": "Chest pain",
            "key_insights_from_ais": ["Likely angina", "Mild anemia"],
        },
        "follow_up_recommendations": {
            "symptom_monitoring": {
                "track_daily": ["Chest pain episodes"],
                "use_symptom_diary": "Yes",
                "photo_documentation": "Not needed",
            },
            "follow_up_timeline": {"cardiology": "Within 2 weeks"},
            "medication_guidance": {"aspirin": "Only if prescribed"},
            "dietary_recommendations": {
                "general_approach": "Heart-healthy",
                "avoid": ["Salt"],
                "ensure": "Iron intake",
            },
            "urgent_care_indicators": ["Pain at rest"],
            "next_steps": {"tests": "Book troponin and lipids"},
        },
        "reference_data_for_next_role": {
            "follow_up_summary": "Cardiology review within two weeks.",
            "red_flag_symptoms": ["Pain at rest"],
        },
    },
    "summarizer": {
        "summary_of_condition": "Probable stable angina with mild anemia.",
        "primary_concerns": ["Chest pain"],
        "potential_diagnoses": ["Stable angina"],
        "recommended_tests": ["Troponin"],
        "lifestyle_recommendations": ["Daily walking"],
        "urgent_care_indicators": ["Pain at rest"],
        "reference_data_for_next_role": {"final_summary": "Cardiology follow-up advised."},
    },
}


class FakeCompletionClient:
    """Answers each stage with a canned JSON reply chosen from the system prompt's role name."""

    base_url = "https://completion.test"

    def __init__(self, replies=None, failures=None, stream_failures=0):
        from models import RESPONSE_MODELS

        self.replies = dict(replies or {})
        self.failures = dict(failures or {})
        self.stream_failures = stream_failures
        self.calls = []
        self._role_names = {stage.value: cls.ROLE_NAME for stage, cls in RESPONSE_MODELS.items()}

    def stage_for(self, system_prompt):
        for stage, role_name in self._role_names.items():
            if f'"{role_name}"' in system_prompt:
                return stage
        raise AssertionError("System prompt does not name a known role.")

    async def complete(
        self,
        model,
        system_prompt,
        user_prompt,
        *,
        streaming=False,
        has_image_content=False,
        on_chunk=None,
    ):
        from completion_client import CompletionError, notify_chunk
        from models import CompletionChunk, CompletionResult

        stage = self.stage_for(system_prompt)
        self.calls.append(
            {
                "stage": stage,
                "model": model,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "streaming": streaming,
                "has_image_content": has_image_content,
            }
        )
        if streaming and self.stream_failures > 0:
            self.stream_failures -= 1
            raise CompletionError("stream dropped", status_code=503)
        if self.failures.get(stage, 0) > 0:
            self.failures[stage] -= 1
            raise CompletionError("backend unavailable", status_code=500)

        reply = self.replies.get(stage, STAGE_REPLIES[stage])
        content = reply if isinstance(reply, str) else json.dumps(reply)
        if streaming and on_chunk is not None:
            middle = len(content) // 2
            for piece in (content[:middle], content[middle:]):
                await notify_chunk(on_chunk, CompletionChunk(delta=piece))
            await notify_chunk(on_chunk, CompletionChunk(delta="", is_final=True))
        return CompletionResult(id=f"fake-{stage}", model=model, content=content)


@pytest.fixture
def user_input_payload():
    return {
        "user_details": {
            "id": "user-123",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "country": "UK",
            "city": "London",
            "gender": "female",
            "age": 36,
        },
        "health_metrics": {"height": 170, "weight": 65, "dietary_preference": "Vegetarian"},
        "symptoms_info": {
            "symptoms_list": ["chest pain", "fatigue"],
            "description": "Tightness in chest when climbing stairs",
            "duration": "2 weeks",
        },
        "medical_info": {
            "allergies": ["penicillin"],
            "medications": ["lisinopril"],
            "medical_conditions": ["hypertension"],
            "health_history": "No prior cardiac events",
        },
    }


@pytest.fixture
def report_input_payload(user_input_payload):
    payload = dict(user_input_payload)
    payload["medical_report"] = {"text": "CBC: Hb 10.2 g/dL", "type": "Blood Test", "name": "cbc.pdf"}
    return payload


@pytest.fixture
def fake_completion():
    return FakeCompletionClient


@pytest.fixture
def memory_store():
    from session_repository import InMemorySessionRepository
    from session_store import SessionStore, StaticIdentityProvider

    return SessionStore(InMemorySessionRepository(), identity_provider=StaticIdentityProvider(None))


@pytest.fixture
def stage_replies():
    return copy.deepcopy(STAGE_REPLIES)
