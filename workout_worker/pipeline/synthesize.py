import re
import json
import logging
from typing import Any, Dict

import openai
from openai import OpenAI
from pydantic import ValidationError

from ..errors import InvalidWorkoutShape, SynthesisCallFailed, SynthesisParseFailed
from ..models import WorkoutRecord

logger = logging.getLogger("workout_worker")

SYSTEM_PROMPT = (
    "You are a fitness expert. Extract workout information from the text and return ONLY a "
    "valid JSON object with this structure: {\"name\": \"workout name\", \"exercises\": "
    "[{\"name\": \"exercise\", \"reps\": \"10\", \"sets\": \"3\", \"notes\": \"\"}], "
    "\"duration\": \"45 min\", \"difficulty\": \"Intermediate\", \"notes\": \"any additional "
    "notes\"}. Do not include any explanation or markdown."
)
FRAMES_HEADER = "=== EXTRACTED FROM VIDEO FRAMES ==="

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def build_prompt(caption: str, extracted_text: str) -> str:
    """Caption followed by a labeled block of frame text"""
    return f"{caption or ''}\n\n{FRAMES_HEADER}\n{extracted_text}"


def parse_workout(content: str) -> WorkoutRecord:
    """
    Recover and validate a workout record from raw model output.

    Raises:
        SynthesisParseFailed: no JSON object in the content
        InvalidWorkoutShape: the object is not a workout record
    """
    match = _JSON_OBJECT.search(content or "")
    if not match:
        raise SynthesisParseFailed(content)

    try:
        data: Dict[str, Any] = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise SynthesisParseFailed(content, cause=e) from e

    if not isinstance(data, dict):
        raise InvalidWorkoutShape("response is not a JSON object")
    if not isinstance(data.get("exercises"), list):
        raise InvalidWorkoutShape("exercises must be a list")

    try:
        return WorkoutRecord.model_validate(data)
    except ValidationError as e:
        raise InvalidWorkoutShape(str(e), cause=e) from e


def synthesize_workout(caption: str, extracted_text: str, api_key: str,
                       model: str = "gpt-4o-mini") -> WorkoutRecord:
    """
    Turn a caption and frame text into a structured workout using OpenAI.

    Returns:
        Validated WorkoutRecord
    """
    client = OpenAI(api_key=api_key)

    logger.info(f"Synthesizing workout from {len(extracted_text)} characters of frame text")

    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(caption, extracted_text)}
            ],
            max_tokens=2000,
            temperature=0.3
        )
    except openai.APIStatusError as e:
        raise SynthesisCallFailed(e.status_code, e.message, cause=e) from e
    except openai.APIError as e:
        raise SynthesisCallFailed(None, str(e), cause=e) from e
    finally:
        client.close()

    content = (response.choices[0].message.content if response.choices else None) or ""
    workout = parse_workout(content)

    logger.info(f"Synthesized workout '{workout.name}' with {len(workout.exercises)} exercises")
    return workout
