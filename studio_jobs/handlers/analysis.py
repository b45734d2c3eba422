"""ANALYSIS handler: turn product photos into an image-plan blueprint."""

import json
import re
from typing import Any, Dict, List

from studio_jobs.errors import StudioJobsError, TaskExecutionError
from studio_jobs.models import JobType, TaskResult
from studio_jobs.pricing import clamp_int, non_empty_strings
from studio_jobs.registry import job_registry

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}$")

_LANGUAGE_LABELS = {
    "none": "None Text(Visual Only)",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "pt": "Portuguese",
    "ar": "Arabic",
    "ru": "Russian",
}

DEFAULT_DESIGN_SPECS = """# Overall Design Specifications

## Color System
- Primary color: Product-led
- Secondary color: Accent based on brand tone
- Background color: Clean neutral

## Photography Style
- Lighting: Soft-box diffused light with rim highlights
- Depth of Field: Product-focused with soft background blur

## Quality Requirements
- Resolution: 4K/HD
- Style: Professional e-commerce photography
- Realism: Hyper-realistic"""


def output_language_label(output_language: str) -> str:
    return _LANGUAGE_LABELS.get(output_language, "English")


def parse_json_from_content(content: str) -> Dict[str, Any]:
    """Parse a model reply that should be a JSON object but may be wrapped."""
    trimmed = content.strip()
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError:
        pass

    fence = _FENCE_RE.search(trimmed)
    if fence:
        try:
            return json.loads(fence.group(1))
        except json.JSONDecodeError:
            pass

    match = _OBJECT_RE.search(trimmed)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass

    raise TaskExecutionError("ANALYSIS_FAILED", "Could not parse analysis JSON")


def _text_or(value: Any, fallback: str) -> str:
    return value if isinstance(value, str) and value.strip() else fallback


def _fallback_design_content(index: int, output_language: str) -> str:
    text_area = "No-text area" if output_language == "none" else "Top-left area"
    return (
        f"## Image [{index + 1}]: Product Presentation\n\n"
        "**Design Goal**: Present product with premium commercial quality.\n\n"
        "**Composition Plan**:\n- Product Proportion: 70%\n- Layout Method: Center composition\n"
        f"- Text Area: {text_area}\n\n"
        f"**Text Content** (Using {output_language_label(output_language)})"
    )


def normalize_blueprint(
    parsed: Dict[str, Any], image_count: int, output_language: str = "en"
) -> Dict[str, Any]:
    """Coerce model output to exactly ``image_count`` image plans (1..15)."""
    if not isinstance(parsed, dict):
        parsed = {}
    images: List[Dict[str, str]] = []
    raw_images = parsed.get("images")
    if isinstance(raw_images, list):
        for i, item in enumerate(x for x in raw_images if isinstance(x, dict)):
            images.append(
                {
                    "title": _text_or(item.get("title"), f"Image Concept {i + 1}"),
                    "description": _text_or(
                        item.get("description"), "Professional e-commerce visual concept."
                    ),
                    "design_content": _text_or(
                        item.get("design_content"),
                        _fallback_design_content(i, output_language),
                    ),
                }
            )

    if not images:
        images.append(
            {
                "title": "Hero Product Showcase",
                "description": "A clean, high-conversion product visual concept.",
                "design_content": _fallback_design_content(0, output_language),
            }
        )

    count = clamp_int(image_count, 1, 15, 1)
    base = images[-1]
    for i in range(len(images), count):
        images.append(
            {
                "title": f"{base['title']} {i + 1}",
                "description": base["description"],
                "design_content": re.sub(
                    r"Image \[\d+\]", f"Image [{i + 1}]", base["design_content"]
                ),
            }
        )

    return {
        "images": images[:count],
        "design_specs": _text_or(parsed.get("design_specs"), DEFAULT_DESIGN_SPECS),
        "_ai_meta": {"image_count": count, "output_language": output_language},
    }


def build_analysis_messages(
    product_images: List[str], requirements: str, image_count: int, output_language: str
) -> List[Dict[str, Any]]:
    instructions = (
        "You are a senior e-commerce art director. Study the product photos and "
        f"plan exactly {image_count} commercial images. Reply with a JSON object: "
        '{"images": [{"title", "description", "design_content"}], "design_specs": "..."}. '
        f"In-image text language: {output_language_label(output_language)}."
    )
    if requirements:
        instructions += f"\nUser requirements: {requirements}"

    content: List[Dict[str, Any]] = [{"type": "text", "text": instructions}]
    for url in product_images:
        content.append({"type": "image_url", "image_url": {"url": url}})
    return [{"role": "user", "content": content}]


@job_registry.handler(JobType.ANALYSIS)
async def analyze_product(ctx, payload):
    """
    Produce a design blueprint for the product photos in ``payload``.

    Args:
        ctx: Context dict with job, task, logger and upstream client
        payload: Job payload dict
    """
    logger = ctx["logger"]
    job = ctx["job"]

    product_images = non_empty_strings(payload.get("productImages"))
    if not product_images and isinstance(payload.get("productImage"), str):
        product_images = non_empty_strings([payload["productImage"]])
    if not product_images:
        raise TaskExecutionError(
            "ANALYSIS_INPUT_IMAGE_MISSING", "No product image supplied", retryable=False
        )

    image_count = clamp_int(payload.get("imageCount", 1), 1, 15, 1)
    output_language = str(payload.get("outputLanguage") or "en")

    logger.info(f"Analyzing {len(product_images)} product images for job {job.id}")
    messages = build_analysis_messages(
        product_images, str(payload.get("requirements") or ""), image_count, output_language
    )
    try:
        content = await ctx["upstream"].chat(messages)
    except StudioJobsError:
        raise
    except Exception as e:
        raise TaskExecutionError("ANALYSIS_FAILED", str(e)) from e

    blueprint = normalize_blueprint(
        parse_json_from_content(content), image_count, output_language
    )
    logger.info(f"Analysis for job {job.id} produced {len(blueprint['images'])} image plans")
    return TaskResult(result_data=blueprint)
