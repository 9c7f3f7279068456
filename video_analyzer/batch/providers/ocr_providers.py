import json
import base64
import logging

from openai import AsyncAzureOpenAI, AsyncOpenAI

from video_analyzer.batch.providers.base import CapabilityProvider, ProviderResult
from video_analyzer.batch.rate_limiter import RateLimiter

logger = logging.getLogger("ocr_providers")

OCR_PROMPT = """
Read all text visible in this video frame (captions, subtitles, titles, slides, UI).
Keep the original language and line order. Do not describe the image.

Return JSON only:
{"text": "<lines separated by \\n, empty string if there is no text>", "confidence": <0.0-1.0>}
""".strip()


def safe_json_load(text):
    if not text:
        return None

    text = text.strip()

    if text.startswith("```"):
        lines = text.splitlines()
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


class VisionOcrProvider(CapabilityProvider):
    """OCR through a chat-completions vision model (OpenAI, Azure OpenAI or any compatible endpoint)."""

    def __init__(self, name, client, model, priority=1, limiter=None, max_tokens=1024):
        super().__init__(name, priority=priority, limiter=limiter)
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    async def _call(self, image: bytes) -> ProviderResult:
        img_b64 = base64.b64encode(image).decode("utf-8")
        resp = await self.client.chat.completions.create(
            model=self.model,
            messages=[{
                "role": "user",
                "content": [
                    {"type": "text", "text": OCR_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{img_b64}"}},
                ],
            }],
            max_tokens=self.max_tokens,
            temperature=0,
        )
        content = resp.choices[0].message.content if resp.choices else ""
        data = safe_json_load(content)
        if isinstance(data, dict):
            text = str(data.get("text") or "").strip()
            try:
                confidence = float(data.get("confidence", 0.9 if text else 0.0))
            except (TypeError, ValueError):
                confidence = 0.9 if text else 0.0
        else:
            # model ignored the JSON instruction: keep its raw answer
            text = (content or "").strip()
            confidence = 0.5 if text else 0.0
        return ProviderResult(text=text, confidence=confidence)


def build_ocr_providers(configs) -> list:
    """Register one provider per configured credential, in priority order."""
    providers = []

    def limiter(name):
        return RateLimiter(
            name,
            max_concurrent=configs.OCR_MAX_CONCURRENT_PER_PROVIDER,
            requests_per_window=configs.OCR_REQUESTS_PER_MINUTE,
            window_seconds=60,
        )

    if configs.AZURE_OPENAI_KEY and configs.AZURE_OPENAI_ENDPOINT:
        client = AsyncAzureOpenAI(
            api_key=configs.AZURE_OPENAI_KEY,
            azure_endpoint=configs.AZURE_OPENAI_ENDPOINT,
            api_version=configs.AZURE_OPENAI_API_VERSION,
        )
        providers.append(VisionOcrProvider("azure", client, configs.AZURE_OCR_DEPLOYMENT, priority=1, limiter=limiter("azure")))

    if configs.OPENAI_API_KEY:
        client = AsyncOpenAI(api_key=configs.OPENAI_API_KEY)
        providers.append(VisionOcrProvider("openai", client, configs.OPENAI_OCR_MODEL, priority=2, limiter=limiter("openai")))

    if configs.GLM_API_KEY:
        client = AsyncOpenAI(api_key=configs.GLM_API_KEY, base_url=configs.GLM_BASE_URL)
        providers.append(VisionOcrProvider("glm", client, configs.GLM_OCR_MODEL, priority=3, limiter=limiter("glm")))

    if not providers:
        logger.warning("[OCR] No OCR provider configured: every scene will get an empty result")
    else:
        logger.info("[OCR] Providers: %s", ", ".join(p.name for p in providers))
    return providers
