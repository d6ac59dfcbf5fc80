"""Caption generation API.

Both routes are quota-consuming: they run inside EntitlementGate.metered(),
so a denied caller never reaches Groq and a failed generation is never charged.
"""

from typing import List, Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, field_validator

from captionai.core.deps import get_gate, get_generator
from captionai.core.logging import get_request_id, log_event
from captionai.features.entitlements.identity import normalize_identity
from captionai.features.entitlements.service import Decision, EntitlementGate
from captionai.features.generation.service import (
    CaptionBrief,
    CaptionGenerator,
    GenerationResult,
    run_with_timeout,
)

router = APIRouter(prefix="/api", tags=["generate"])

MAX_IDEA_CHARS = 2000


class GenerateRequest(BaseModel):
    idea: str
    platform: str
    tone: str
    email: str
    brand_voice: Optional[str] = None

    @field_validator("idea", "platform", "tone")
    @classmethod
    def required_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("field is required")
        if len(value) > MAX_IDEA_CHARS:
            raise ValueError(f"must be at most {MAX_IDEA_CHARS} characters")
        return value

    @field_validator("brand_voice")
    @classmethod
    def optional_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if len(value) > MAX_IDEA_CHARS:
            raise ValueError(f"must be at most {MAX_IDEA_CHARS} characters")
        return value or None

    @field_validator("email")
    @classmethod
    def normalized_email(cls, value: str) -> str:
        return normalize_identity(value)

    def to_brief(self) -> CaptionBrief:
        return CaptionBrief(
            idea=self.idea,
            platform=self.platform,
            tone=self.tone,
            brand_voice=self.brand_voice,
        )


class BoostRequest(GenerateRequest):
    captions: Union[str, List[str]]

    @field_validator("captions")
    @classmethod
    def captions_required(cls, value: Union[str, List[str]]) -> str:
        if isinstance(value, list):
            value = "\n".join(f"{i}. \"{c.strip()}\"" for i, c in enumerate(value, start=1) if c.strip())
        value = value.strip()
        if not value:
            raise ValueError("captions are required")
        return value


def _payload(result: GenerationResult, decision: Decision) -> dict:
    remaining = decision.remaining_after_commit()
    return {
        "result": result.result,
        "captions": result.captions,
        "hashtags": result.hashtags,
        "remaining_free_uses": "unlimited" if remaining is None else remaining,
    }


@router.post("/generate")
async def generate_captions(
    body: GenerateRequest,
    request: Request,
    gate: EntitlementGate = Depends(get_gate),
    generator: CaptionGenerator = Depends(get_generator),
):
    rid = getattr(request.state, "request_id", None) or get_request_id()
    async with gate.metered(body.email) as decision:
        result = await run_with_timeout(generator.generate, body.to_brief(), timeout=generator.timeout)

    log_event(
        "info",
        "generate.completed",
        request_id=rid,
        identity=body.email,
        event_type="generate",
        extra={"platform": body.platform, "captions": len(result.captions)},
    )
    return {"data": _payload(result, decision), "request_id": rid}


@router.post("/boost")
async def boost_captions(
    body: BoostRequest,
    request: Request,
    gate: EntitlementGate = Depends(get_gate),
    generator: CaptionGenerator = Depends(get_generator),
):
    rid = getattr(request.state, "request_id", None) or get_request_id()
    async with gate.metered(body.email) as decision:
        result = await run_with_timeout(generator.boost, body.to_brief(), body.captions, timeout=generator.timeout)

    log_event(
        "info",
        "boost.completed",
        request_id=rid,
        identity=body.email,
        event_type="boost",
        extra={"platform": body.platform, "captions": len(result.captions)},
    )
    return {"data": _payload(result, decision), "request_id": rid}
