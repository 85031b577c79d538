"""
Semantic alignment module for epubsync.

Asks a multimodal model (Gemini generateContent over HTTP) to locate
one page's fragments anywhere in the full narration track and return
absolute timestamps, or a "skipped" verdict for fragments that are not
narrated (repeated headings, captions, boilerplate).

The model's JSON is untrusted: every verdict is validated against a
tagged union before it becomes a candidate.
"""

import base64
import json
import os
import re
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional, Sequence, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from .audio import audio_mime_type
from .extractor import FragmentExtractor
from .models import AlignmentCandidate, AlignmentSource, Granularity, TextFragment
from .ratelimit import ExternalCallGate
from .utils import (
    AlignmentUnavailable,
    MalformedResponseError,
    RateLimitedError,
    get_logger,
    round_time,
)

logger = get_logger(__name__)

# Verdicts may overshoot the track end by this much before they are rejected
END_TOLERANCE_SECONDS = 0.5


# ============================================================================
# Response Models
# ============================================================================


class SyncedVerdict(BaseModel):
    id: str
    status: Literal["synced"]
    start: float = Field(ge=0)
    end: float

    @model_validator(mode="after")
    def _validate_range(self) -> "SyncedVerdict":
        if self.end <= self.start:
            raise ValueError(f"end ({self.end}) must be after start ({self.start})")
        return self


class SkippedVerdict(BaseModel):
    id: str
    status: Literal["skipped"]


Verdict = Annotated[Union[SyncedVerdict, SkippedVerdict], Field(discriminator="status")]
VERDICT_ADAPTER = TypeAdapter(Verdict)


PROMPT_TEMPLATE = """You are aligning an audiobook narration with the text of one page.

The attached audio is the COMPLETE narration ({duration:.3f} seconds long). This
page's text is somewhere inside it; locate it and return ABSOLUTE timestamps
measured from the start of the audio.

Fragments of this page ({granularity} level), in reading order:
{fragments}

For EVERY fragment id above return exactly one verdict:
- {{"id": "<id>", "status": "synced", "start": <seconds>, "end": <seconds>}} when it is spoken
- {{"id": "<id>", "status": "skipped"}} when it is not narrated (running headers,
  table of contents lines, captions, repeated headings)

Rules:
- Timestamps are seconds with millisecond precision, 0 <= start < end <= {duration:.3f}
- Synced fragments follow reading order and do not overlap
- Respond with a JSON array of verdicts only
"""


class SemanticAlignmentAdapter:
    """
    Per-page alignment through a generative model.

    Every network call (upload and generation) goes through the shared
    ExternalCallGate. The audio file is uploaded once per path and the
    file reference is reused for every page of every job.
    """

    def __init__(
        self,
        api_key: str,
        gate: ExternalCallGate,
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 300.0,
        inline_audio_limit_mb: float = 18.0,
        client: Optional[httpx.AsyncClient] = None,
        extractor: Optional[FragmentExtractor] = None,
    ):
        self.api_key = api_key
        self.gate = gate
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.inline_audio_limit_mb = inline_audio_limit_mb
        self.extractor = extractor or FragmentExtractor()
        self._client = client
        self._owns_client = client is None
        self._audio_parts: Dict[str, Dict] = {}

    @classmethod
    def from_config(cls, config, gate: ExternalCallGate, client: Optional[httpx.AsyncClient] = None):
        return cls(
            api_key=config.gemini_api_key,
            gate=gate,
            model=config.gemini_model,
            base_url=config.gemini_base_url,
            timeout=config.semantic_timeout,
            inline_audio_limit_mb=config.inline_audio_limit_mb,
            client=client,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @staticmethod
    def parse_retry_delay(response: httpx.Response) -> Optional[float]:
        """Read the server's suggested retry delay (RetryInfo or Retry-After)."""
        header = response.headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                pass

        try:
            body = response.json()
        except ValueError:
            return None
        error = body.get("error") if isinstance(body, dict) else None
        details = error.get("details", []) if isinstance(error, dict) else []
        for detail in details:
            delay = detail.get("retryDelay") if isinstance(detail, dict) else None
            if delay:
                match = re.match(r"^([\d.]+)s$", str(delay))
                if match:
                    return float(match.group(1))
        return None

    @staticmethod
    def _is_quota_error(response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        return response.status_code == 403 and "RESOURCE_EXHAUSTED" in response.text

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise AlignmentUnavailable(f"Semantic alignment request timed out: {e}")
        except httpx.HTTPError as e:
            raise AlignmentUnavailable(f"Semantic alignment request failed: {e}")

        if self._is_quota_error(response):
            raise RateLimitedError(
                f"Quota exceeded (HTTP {response.status_code})",
                retry_after=self.parse_retry_delay(response),
            )
        if response.status_code >= 400:
            raise AlignmentUnavailable(
                f"Semantic alignment service returned HTTP {response.status_code}: {response.text[:200]}"
            )
        return response

    async def _upload_audio(self, audio_path: str, mime_type: str) -> Dict:
        """Upload through the Files API resumable protocol and return a file_data part."""
        content = Path(audio_path).read_bytes()

        start = await self._request(
            "POST",
            f"{self.base_url}/upload/v1beta/files",
            headers={
                "x-goog-api-key": self.api_key,
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(content)),
                "X-Goog-Upload-Header-Content-Type": mime_type,
            },
            json={"file": {"display_name": Path(audio_path).name}},
        )
        upload_url = start.headers.get("x-goog-upload-url")
        if not upload_url:
            raise MalformedResponseError("Files API did not return an upload URL")

        finished = await self._request(
            "POST",
            upload_url,
            headers={
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=content,
        )
        try:
            uri = finished.json()["file"]["uri"]
        except (ValueError, KeyError, TypeError):
            raise MalformedResponseError("Files API response has no file uri")

        logger.info(f"Uploaded {Path(audio_path).name} for semantic alignment")
        return {"file_data": {"mime_type": mime_type, "file_uri": uri}}

    @staticmethod
    def inline_payload_mb(audio_path: str) -> float:
        """Size of the audio once base64 encoded for an inline request, in MB."""
        return os.path.getsize(audio_path) * 4 / 3 / (1024 * 1024)

    async def _audio_part(self, audio_path: str) -> Dict:
        key = str(Path(audio_path).resolve())
        if key in self._audio_parts:
            return self._audio_parts[key]

        mime_type = audio_mime_type(audio_path)
        if self.inline_payload_mb(audio_path) <= self.inline_audio_limit_mb:
            data = base64.b64encode(Path(audio_path).read_bytes()).decode("ascii")
            part = {"inline_data": {"mime_type": mime_type, "data": data}}
        else:
            part = await self.gate.call(
                lambda: self._upload_audio(audio_path, mime_type),
                description=f"audio upload {Path(audio_path).name}",
            )

        self._audio_parts[key] = part
        return part

    async def _generate(self, payload: Dict) -> Dict:
        response = await self._request(
            "POST",
            f"{self.base_url}/v1beta/models/{self.model}:generateContent",
            headers={"x-goog-api-key": self.api_key},
            json=payload,
        )
        try:
            return response.json()
        except ValueError:
            raise MalformedResponseError("Semantic alignment response is not JSON")

    # ------------------------------------------------------------------
    # Prompt and response handling
    # ------------------------------------------------------------------

    @staticmethod
    def build_prompt(fragments: Sequence[TextFragment], audio_duration: float, granularity: Granularity) -> str:
        listing = "\n".join(
            json.dumps({"id": f.id, "text": f.text}, ensure_ascii=False) for f in fragments
        )
        return PROMPT_TEMPLATE.format(
            duration=audio_duration,
            granularity=Granularity(granularity).value,
            fragments=listing,
        )

    @staticmethod
    def response_text(data: Dict) -> str:
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            reason = (data.get("promptFeedback") or {}).get("blockReason") if isinstance(data, dict) else None
            raise MalformedResponseError(
                f"Semantic alignment response has no content{f' ({reason})' if reason else ''}"
            )
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    @staticmethod
    def _load_entries(text: str) -> List:
        text = text.strip()
        fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
        if fenced:
            text = fenced.group(1)

        try:
            data = json.loads(text)
        except ValueError as e:
            raise MalformedResponseError(f"Unparsable verdict JSON: {e}")

        if isinstance(data, dict):
            data = data.get("verdicts", data.get("fragments"))
        if not isinstance(data, list):
            raise MalformedResponseError("Verdict payload is not a list")
        return data

    def parse_verdicts(
        self,
        text: str,
        fragments: Sequence[TextFragment],
        audio_duration: float,
    ) -> List[AlignmentCandidate]:
        """
        Turn the model's JSON into exactly one candidate per fragment.

        Invalid verdicts become skipped ("invalid_verdict"), missing ids
        become skipped ("missing_verdict"), unknown ids are ignored.

        Raises:
            MalformedResponseError: If the payload is not a JSON list of verdicts
        """
        by_id = {f.id: f for f in fragments}
        verdicts: Dict[str, AlignmentCandidate] = {}
        invalid = 0
        unknown = 0

        for entry in self._load_entries(text):
            if isinstance(entry, dict) and isinstance(entry.get("status"), str):
                entry = dict(entry, status=entry["status"].strip().lower())

            entry_id = entry.get("id") if isinstance(entry, dict) else None
            if not isinstance(entry_id, str) or entry_id not in by_id:
                unknown += 1
                continue
            if entry_id in verdicts:
                continue

            fragment = by_id[entry_id]
            try:
                verdict = VERDICT_ADAPTER.validate_python(entry)
            except ValidationError as e:
                logger.debug(f"Invalid verdict for {entry_id}: {e.errors()[0]['msg']}")
                verdicts[entry_id] = AlignmentCandidate.skipped(fragment, AlignmentSource.SEMANTIC_AI, "invalid_verdict")
                invalid += 1
                continue

            if isinstance(verdict, SkippedVerdict):
                verdicts[entry_id] = AlignmentCandidate.skipped(fragment, AlignmentSource.SEMANTIC_AI)
                continue

            if audio_duration and verdict.end > audio_duration + END_TOLERANCE_SECONDS:
                logger.debug(f"Verdict for {entry_id} ends past the audio ({verdict.end:.3f}s)")
                verdicts[entry_id] = AlignmentCandidate.skipped(fragment, AlignmentSource.SEMANTIC_AI, "invalid_verdict")
                invalid += 1
                continue

            if audio_duration and verdict.start >= audio_duration:
                logger.debug(f"Verdict for {entry_id} starts after the audio ends ({verdict.start:.3f}s)")
                verdicts[entry_id] = AlignmentCandidate.skipped(fragment, AlignmentSource.SEMANTIC_AI, "invalid_verdict")
                invalid += 1
                continue

            end = min(verdict.end, audio_duration) if audio_duration else verdict.end
            verdicts[entry_id] = AlignmentCandidate(
                fragment_id=fragment.id,
                page_number=fragment.page_number,
                source=AlignmentSource.SEMANTIC_AI,
                start_time=round_time(verdict.start),
                end_time=round_time(end),
                text=fragment.text,
            )

        candidates = []
        missing = 0
        for fragment in fragments:
            if fragment.id not in verdicts:
                missing += 1
                candidates.append(
                    AlignmentCandidate.skipped(fragment, AlignmentSource.SEMANTIC_AI, "missing_verdict")
                )
            else:
                candidates.append(verdicts[fragment.id])

        if missing:
            logger.warning(f"Model returned no verdict for {missing}/{len(fragments)} fragments")
        if invalid:
            logger.warning(f"Discarded {invalid} invalid verdicts")
        if unknown:
            logger.debug(f"Ignored {unknown} verdicts for unknown ids")

        return candidates

    async def align_page(
        self,
        page_xhtml: str,
        audio_path: str,
        audio_duration: float,
        granularity: Granularity = Granularity.SENTENCE,
        fragments: Optional[Sequence[TextFragment]] = None,
        page_number: Optional[int] = None,
    ) -> List[AlignmentCandidate]:
        """
        Align one page against the full audio file.

        Args:
            page_xhtml: XHTML content of the page
            audio_path: Narration audio file (the whole track)
            audio_duration: Track duration in seconds
            granularity: Fragment level to align
            fragments: Pre-extracted fragments (extracted from page_xhtml if omitted)
            page_number: Page used for ids without a page prefix

        Returns:
            One candidate per fragment, synced or skipped

        Raises:
            RateLimitedError: If quota failures persist or the circuit is open
            AlignmentUnavailable: On network errors, timeouts and HTTP errors
            MalformedResponseError: If the response cannot be parsed
        """
        if fragments is None:
            fragments = self.extractor.extract(page_xhtml, granularity, page_number=page_number).fragments
        if not fragments:
            return []

        label = f"page {page_number if page_number is not None else fragments[0].page_number}"
        audio_part = await self._audio_part(audio_path)

        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": self.build_prompt(fragments, audio_duration, granularity)},
                        audio_part,
                    ]
                }
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "temperature": 0.1,
            },
        }

        logger.info(f"Requesting semantic alignment for {label} ({len(fragments)} fragments)")
        data = await self.gate.call(lambda: self._generate(payload), description=label)
        candidates = self.parse_verdicts(self.response_text(data), fragments, audio_duration)

        synced = sum(1 for c in candidates if c.is_synced)
        logger.info(f"Semantic alignment for {label}: {synced} synced, {len(candidates) - synced} skipped")
        return candidates
