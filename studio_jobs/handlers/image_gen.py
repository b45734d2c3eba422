"""IMAGE_GEN handler: render one commercial image from a prompt."""

from typing import Any, Dict, List, Optional

from studio_jobs.errors import TaskExecutionError
from studio_jobs.models import JobType, TaskResult
from studio_jobs.pricing import non_empty_strings
from studio_jobs.registry import job_registry

ECOMMERCE_PROMPT_PREFIX = (
    "Professional e-commerce product photography. High-end commercial catalog quality. "
    "Studio lighting with soft shadows. Clean, premium aesthetic. Product is the hero, "
    "sharp focus, realistic materials and textures. White or contextual lifestyle "
    "background. 4K ultra-detailed rendering. "
)

_PORTRAIT = {"2:3", "3:4", "9:16", "4:5", "1:2"}
_LANDSCAPE = {"3:2", "4:3", "16:9", "5:4", "2:1"}


def aspect_ratio_to_size(ratio: Optional[str]) -> str:
    if ratio in _PORTRAIT:
        return "1024x1536"
    if ratio in _LANDSCAPE:
        return "1536x1024"
    return "1024x1024"


def collect_source_images(payload: Dict[str, Any]) -> List[str]:
    """Input images in the order the model should see them.

    For model try-on the model photo comes first, then the products.
    """
    images: List[str] = []
    if payload.get("workflowMode") == "model":
        images.extend(non_empty_strings([payload.get("modelImage")]))
    images.extend(non_empty_strings(payload.get("productImages")))
    if not images:
        images.extend(non_empty_strings([payload.get("productImage")]))
    return images


@job_registry.handler(JobType.IMAGE_GEN)
async def generate_image(ctx, payload):
    logger = ctx["logger"]
    job = ctx["job"]

    images = collect_source_images(payload)
    if not images:
        raise TaskExecutionError(
            "IMAGE_INPUT_SOURCE_MISSING", "No source image supplied", retryable=False
        )
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise TaskExecutionError(
            "IMAGE_INPUT_PROMPT_MISSING", "No prompt supplied", retryable=False
        )

    logger.info(f"Generating image for job {job.id} from {len(images)} source images")
    generated = await ctx["upstream"].edit_image(
        images,
        ECOMMERCE_PROMPT_PREFIX + prompt,
        size=aspect_ratio_to_size(payload.get("aspectRatio")),
    )

    return TaskResult(
        result_data={
            "url": generated["url"],
            "b64_json": generated["b64_json"],
            "model": payload.get("model"),
            "image_size": payload.get("imageSize"),
            "aspect_ratio": payload.get("aspectRatio", "1:1"),
            "prompt": prompt,
        },
        result_url=generated["url"],
    )
