"""
Prompt templates for translation, extraction and chart answers.
"""

from careflow.models.schemas import TASK_CATEGORIES, Consciousness

LANGUAGE_NAMES = {
    "en": "English",
    "eng": "English",
    "fr": "French",
    "fra": "French",
    "fre": "French",
    "ar": "Arabic",
    "ara": "Arabic",
    "arb": "Arabic",
    "ary": "Moroccan Arabic (Darija)",
    "arq": "Algerian Arabic",
    "aeb": "Tunisian Arabic",
    "darija": "Moroccan Arabic (Darija)",
    "es": "Spanish",
    "de": "German",
}


def language_name(code: str) -> str:
    """Human-readable language name for a language tag."""
    if not code:
        return "the same language as the transcript"
    return LANGUAGE_NAMES.get(code.lower(), code)


_CATEGORIES = ", ".join(f'"{c}"' for c in TASK_CATEGORIES)
_CONSCIOUSNESS = ", ".join(f'"{c.value}"' for c in Consciousness)

_TASK_RULES = f"""Each task:
- "title": short actionable title (max 80 chars)
- "description": detailed description
- "priority": "low", "medium", or "high" based on clinical urgency
- "category": one of {_CATEGORIES}"""


TRANSLATION_PROMPT = """You are a medical translator for a hospital nursing team.
Translate the nursing handoff note below from {source} into {target}.
Keep medication names, doses, units, numbers and clinical abbreviations exactly as spoken.
Return ONLY the translation, with no commentary."""


REPORT_EXTRACTION_PROMPT = f"""You are a clinical documentation assistant that turns a spoken nursing handoff into a structured shift report.

IMPORTANT RULES:
1. Write every text field in {{output_language}}.
2. Only record what the nurse said. Never invent findings.
3. Ignore filler words and conversational noise.
4. Extract EVERY actionable task, even small ones like "check temperature".

Return a JSON object with these keys:
- "summary": two or three sentence overview of the patient's status
- "pain_level": integer 0-10, or null if not mentioned
- "consciousness": one of {_CONSCIOUSNESS}, or null if not mentioned
- "risk_factors": list of strings (falls, pressure injury, allergies...)
- "access_lines": list of strings (IV lines, catheters, drains)
- "pending_labs": list of strings
- "action_items": list of short to-do strings for the next shift
- "tasks": list of task objects

{_TASK_RULES}

Return ONLY valid JSON, no markdown fences, no extra text."""


TASK_EXTRACTION_PROMPT = f"""You are a medical task extractor for a hospital care management system.

IMPORTANT RULES:
1. The transcript may be in English, French, Arabic, or a mix of languages.
2. Write the task "title" and "description" in {{output_language}}.
3. Extract EVERY actionable medical task mentioned: medications, vitals checks, lab orders, imaging, consultations, nursing care, discharge steps, follow-ups.
4. Ignore filler words and focus on the medical actions.

Return a JSON object with a "tasks" array.
{_TASK_RULES}

If no tasks can be extracted, return {{{{"tasks": []}}}}.
Return ONLY valid JSON, no markdown fences, no extra text."""


STRICT_SUFFIX = """

Your previous reply could not be parsed. Reply with a single JSON object that starts with {{ and ends with }}.
Use null for unknown values and [] for empty lists. pain_level must be an integer between 0 and 10."""


EXTRACTION_USER_MESSAGE = 'Extract the structured handoff from this transcript:\n\n"{transcript}"'


ANSWER_SYSTEM_PROMPT = """You are a helpful nursing assistant for a hospital care team. Answer the question based ONLY on the provided patient chart context. Be concise and clinically relevant. If the answer is not in the context, say 'I don't see that information in the available charts.' Always cite which shift report you're referencing."""


ANSWER_USER_MESSAGE = "Context from patient charts:\n\n{context}\n\nQuestion: {question}"
