"""
Metered OpenAI image client.

Charges credits for image generation through the metering gate.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import OpenAI, OpenAIError

from ..core.errors import ExternalProviderError, InsufficientFundsError, ValidationError
from ..core.metering import MAX_UNITS_PER_REQUEST, BatchMeteringResult, MeteringGate, MeteringResult
from ..core.pricing import MODEL_OPTIONS

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "dall-e-3"
MAX_PROMPT_LENGTH = 4000
STYLES = ("vivid", "natural")
# Models the provider only lets produce one image per request
SINGLE_IMAGE_MODELS = ("dall-e-3",)


@dataclass(frozen=True)
class GeneratedImage:
    """One image returned by the provider."""
    url: str
    revised_prompt: Optional[str] = None
    b64_json: Optional[str] = None


class ImageGenerator(Protocol):
    """External image generation capability."""

    def generate(
        self,
        prompt: str,
        model: str,
        size: Optional[str] = None,
        quality: Optional[str] = None,
        style: Optional[str] = None,
        n: int = 1,
    ) -> List[GeneratedImage]:
        ...


class OpenAIImageGenerator:
    """OpenAI Images API adapter.

    Provider failures surface as ExternalProviderError so the metering gate
    can release the reservation without charging.
    """

    def __init__(self, client: Optional[OpenAI] = None):
        """Initialize the generator.

        Args:
            client: OpenAI client; created from the environment on first use
                when omitted, so OPENAI_API_KEY is only needed to generate
        """
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as e:
                raise ExternalProviderError("openai", str(e))
        return self._client

    def generate(
        self,
        prompt: str,
        model: str = DEFAULT_MODEL,
        size: Optional[str] = None,
        quality: Optional[str] = None,
        style: Optional[str] = None,
        n: int = 1,
    ) -> List[GeneratedImage]:
        """Generate images and return their URLs.

        Raises:
            ExternalProviderError: If the OpenAI call fails
        """
        options = MODEL_OPTIONS[model]
        params: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "n": 1 if model in SINGLE_IMAGE_MODELS else min(n, MAX_UNITS_PER_REQUEST),
            "size": size or options.default_size,
            "quality": (quality or options.default_quality) if model != "dall-e-2" else "standard",
        }
        if model.startswith("dall-e"):
            params["response_format"] = "url"
        if style:
            params["style"] = style

        try:
            response = self.client.images.generate(**params)
        except OpenAIError as e:
            logger.error("OpenAI image generation failed (%s): %s", model, e)
            raise ExternalProviderError("openai", str(e))

        return [
            GeneratedImage(
                url=image.url or "",
                revised_prompt=getattr(image, "revised_prompt", None),
                b64_json=getattr(image, "b64_json", None),
            )
            for image in (response.data or [])
        ]


def _validate_model(model: str) -> None:
    if model not in MODEL_OPTIONS:
        raise ValidationError(f"Unsupported model: {model}")


def _validate_prompt(prompt: str) -> None:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("prompt is required and cannot be empty")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(f"prompt cannot exceed {MAX_PROMPT_LENGTH} characters")


class MeteredImageClient:
    """Image generation wrapper that charges credits per image.

    Requests are validated before the ledger is touched; a failed generation
    is never charged.
    """

    def __init__(self, gate: MeteringGate, generator: Optional[ImageGenerator] = None):
        self.gate = gate
        self.generator = generator or OpenAIImageGenerator()

    def generate(
        self,
        user_id: str,
        prompt: str,
        model: str = DEFAULT_MODEL,
        size: Optional[str] = None,
        quality: Optional[str] = None,
        style: Optional[str] = None,
        n: int = 1,
    ) -> MeteringResult:
        """Generate ``n`` images for ``user_id`` and charge for them.

        Returns:
            Authorized MeteringResult whose ``value`` is the list of images

        Raises:
            ValidationError: If the request is malformed
            InsufficientFundsError: If the balance does not cover the cost
            ExternalProviderError: If generation fails (nothing is charged)
        """
        _validate_prompt(prompt)
        _validate_model(model)
        if style is not None and style not in STYLES:
            raise ValidationError(f"style must be one of: {list(STYLES)}")
        if isinstance(n, bool) or not isinstance(n, int) or not 1 <= n <= MAX_UNITS_PER_REQUEST:
            raise ValidationError(f"n must be between 1 and {MAX_UNITS_PER_REQUEST}")
        if n > 1 and model in SINGLE_IMAGE_MODELS:
            raise ValidationError(f"{model} generates one image per request; use generate_batch")

        logger.info("Generating %d image(s) with %s for %s", n, model, user_id)
        result = self.gate.authorize_and_charge(
            user_id,
            model,
            n,
            lambda: self.generator.generate(
                prompt=prompt, model=model, size=size, quality=quality, style=style, n=n
            ),
            metadata={"size": size, "quality": quality},
        )
        if not result.authorized:
            raise InsufficientFundsError(required=result.required, balance=result.balance)
        return result

    def generate_batch(
        self,
        user_id: str,
        prompts: Sequence[str],
        model: str = DEFAULT_MODEL,
        size: Optional[str] = None,
        quality: Optional[str] = None,
    ) -> BatchMeteringResult:
        """Generate one image per prompt; only successful prompts are charged.

        Raises:
            ValidationError: If the batch is empty, too large, or has an empty prompt
            InsufficientFundsError: If the balance does not cover every prompt
        """
        _validate_model(model)
        if not prompts or len(prompts) > MAX_UNITS_PER_REQUEST:
            raise ValidationError(f"prompts must contain 1 to {MAX_UNITS_PER_REQUEST} entries")
        for prompt in prompts:
            _validate_prompt(prompt)

        logger.info("Batch generating %d images with %s for %s", len(prompts), model, user_id)
        result = self.gate.authorize_and_charge_batch(
            user_id,
            model,
            list(prompts),
            lambda prompt: self.generator.generate(
                prompt=prompt, model=model, size=size, quality=quality, n=1
            )[0],
            metadata={"size": size, "quality": quality},
        )
        if not result.authorized:
            raise InsufficientFundsError(required=result.required, balance=result.balance)
        return result
