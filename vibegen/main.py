import logging
import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from vibegen import image_client
from vibegen.composer import compose_final_payload
from vibegen.engine import GenerationEngine
from vibegen.image_client import ImageGenerationError
from vibegen.lanes import GenerationContext, effective_tags
from vibegen.llm_client import probe as llm_probe
from vibegen.llm_client import send_chat as llm_send_chat
from vibegen.llm_client import status as llm_status
from vibegen.validators import FORBIDDEN_PUNCT_RE, collect_text_errors, collect_visual_errors

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

MAX_TAGS = 6
MAX_TAG_CHARS = 30
# Effective tags joined with ", " must leave room in a 100-character line.
MAX_TAG_BUDGET = 80

IMAGE_ERROR_STATUS = {
    "rate_limited": 429,
    "content_policy": 422,
    "model_unavailable": 502,
    "invalid_key": 502,
    "bad_response": 502,
}

app = FastAPI(title="vibegen")

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid, request.method, request.url.path, getattr(response, "status_code", "?"), dur_ms,
        )


class ContextRequest(BaseModel):
    category: str = Field(..., min_length=1, description="Top-level category, e.g. 'Celebrations'")
    subcategory: str = Field(..., min_length=1, description="Subcategory, folded into the required tags")
    tone: str = Field("Humorous", description="Tone name; unknown tones get generic guidance")
    tags: List[str] = Field(default_factory=list, description="Words every line must contain")
    entity: Optional[str] = Field(default=None, description="Optional entity for the context id")

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: List[str]) -> List[str]:
        tags = [t.strip() for t in v if t and t.strip()]
        if len(tags) > MAX_TAGS:
            raise ValueError(f"at most {MAX_TAGS} tags")
        for t in tags:
            if len(t) > MAX_TAG_CHARS:
                raise ValueError(f"tag '{t[:40]}' is longer than {MAX_TAG_CHARS} characters")
        return tags

    @model_validator(mode="after")
    def tags_fit_a_line(self):
        eff = effective_tags(self.subcategory, self.tags)
        for t in eff:
            if FORBIDDEN_PUNCT_RE.search(t):
                raise ValueError(f"tag '{t}' contains a dash sequence that lines may not use")
        if len(", ".join(eff)) > MAX_TAG_BUDGET:
            raise ValueError(f"subcategory and tags together exceed {MAX_TAG_BUDGET} characters")
        return self

    def context(self) -> GenerationContext:
        return GenerationContext(
            category=self.category,
            subcategory=self.subcategory,
            tone=self.tone,
            tags=tuple(self.tags),
            entity=self.entity,
        )


class VisualsRequest(ContextRequest):
    strict: bool = Field(True, description="Require 'symbolic' or 'abstract' in the creative lane")


class ValidateTextRequest(BaseModel):
    candidate: Any
    tags: List[str] = Field(default_factory=list)
    subcategory: Optional[str] = None


class ValidateVisualsRequest(ValidateTextRequest):
    category: Optional[str] = None
    strict: bool = True


class ComposeRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    text_content: str = ""
    text_layout_id: Optional[str] = None
    visual_style: str = ""
    visual_option: Optional[Union[str, Dict[str, Any]]] = None
    negative_prompt: Optional[str] = None
    dimensions: Optional[str] = None
    category: str = Field(..., min_length=1)
    subcategory: str = Field(..., min_length=1)
    tone: str = "Humorous"
    tags: List[str] = Field(default_factory=list)
    entity: Optional[str] = None

    def payload(self):
        ctx = GenerationContext(
            category=self.category,
            subcategory=self.subcategory,
            tone=self.tone,
            tags=tuple(self.tags),
            entity=self.entity,
        )
        return compose_final_payload(
            self.text_content,
            self.text_layout_id,
            self.visual_style,
            self.visual_option,
            self.negative_prompt,
            self.dimensions,
            ctx,
        )


def _engine() -> GenerationEngine:
    return GenerationEngine(send_chat=llm_send_chat, mode=os.getenv("GENERATION_MODE", "live"))


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/llm/status")
def llm_status_endpoint() -> Dict[str, Any]:
    info = dict(llm_status())
    info["mode"] = os.getenv("GENERATION_MODE", "live").strip().lower() or "live"
    return info


@app.get("/llm/probe")
def llm_probe_endpoint() -> Dict[str, Any]:
    return llm_probe()


@app.post("/generate/text")
def generate_text_endpoint(req: ContextRequest) -> Dict[str, Any]:
    return _engine().generate_text(req.context()).model_dump()


@app.post("/generate/visuals")
def generate_visuals_endpoint(req: VisualsRequest) -> Dict[str, Any]:
    return _engine().generate_visuals(req.context(), strict=req.strict).model_dump()


@app.post("/generate/options")
def generate_options_endpoint(req: VisualsRequest) -> Dict[str, Any]:
    """Text and visual lanes for one context, generated in parallel."""
    ctx = req.context()
    engine = _engine()
    with ThreadPoolExecutor(max_workers=2) as pool:
        text_future = pool.submit(engine.generate_text, ctx)
        visual_future = pool.submit(engine.generate_visuals, ctx, req.strict)
        text = text_future.result()
        visuals = visual_future.result()
    return {"text": text.model_dump(), "visuals": visuals.model_dump()}


def _validation_response(errors: List[Dict[str, str]]):
    """
    200 and {"detail":{"valid":true}} on success,
    422 and {"detail":{"valid":false,"errors":[...]}} on failure.
    """
    detail: Dict[str, Any] = {"valid": not errors}
    if errors:
        detail["errors"] = errors
        return JSONResponse(status_code=422, content={"detail": detail})
    return {"detail": detail}


@app.post("/validate/text")
def validate_text_endpoint(req: ValidateTextRequest):
    errors = collect_text_errors(req.candidate, effective_tags(req.subcategory, req.tags))
    return _validation_response(errors)


@app.post("/validate/visuals")
def validate_visuals_endpoint(req: ValidateVisualsRequest):
    errors = collect_visual_errors(
        req.candidate,
        effective_tags(req.subcategory, req.tags),
        strict=req.strict,
        category=req.category,
    )
    return _validation_response(errors)


@app.post("/compose")
def compose_endpoint(req: ComposeRequest) -> Dict[str, Any]:
    return req.payload().to_json()


@app.post("/generate/image")
def generate_image_endpoint(req: ComposeRequest):
    payload = req.payload()
    if not image_client.has_key():
        return JSONResponse(status_code=503, content={"error": "Image generation is not configured"})
    try:
        result = image_client.generate_image(payload)
    except ImageGenerationError as e:
        status = IMAGE_ERROR_STATUS.get(e.code, 502)
        return JSONResponse(status_code=status, content={"error": str(e), "code": e.code})
    return {"url": result["url"], "model": result["model"], "payload": payload.to_json()}
