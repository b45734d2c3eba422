"""STYLE_REPLICATE handler: apply a reference style to product photos, one image per unit."""

import asyncio
from typing import Any, Dict, List, Optional

from studio_jobs.errors import TaskExecutionError, UpstreamError
from studio_jobs.models import JobType, TaskResult
from studio_jobs.pricing import clamp_int, non_empty_strings, style_replicate_image_size
from studio_jobs.registry import job_registry

REFINEMENT_PROMPT = (
    "As a professional e-commerce retouching model, refine this single product photo to "
    "commercial quality without altering the product itself. Only clean blemishes, refine "
    "edges, correct lighting, and enhance color and sharpness."
)
WHITE_BACKGROUND_PROMPT = (
    "Replace everything except the product with a clean, pure white background."
)
STYLE_PROMPT = (
    "Recreate the second image's product in the exact visual style of the first image: "
    "same composition, lighting, color grading, background and mood. Keep the product's "
    "shape, materials, colors and branding unchanged."
)

# Failures that would hit every unit the same way; stop issuing calls once seen.
FATAL_CODES = {"MODEL_UNAVAILABLE", "INSUFFICIENT_CREDITS"}


class StyleUnit:
    """One image to produce."""

    def __init__(
        self,
        mode: str,
        product_image: str,
        reference_image: Optional[str] = None,
        reference_index: int = 0,
        group_index: int = 0,
        product_index: int = 0,
    ):
        self.mode = mode
        self.product_image = product_image
        self.reference_image = reference_image
        self.reference_index = reference_index
        self.group_index = group_index
        self.product_index = product_index

    def position(self) -> Dict[str, int]:
        return {
            "reference_index": self.reference_index,
            "group_index": self.group_index,
            "product_index": self.product_index,
        }


def _invalid(code: str, message: str) -> TaskExecutionError:
    return TaskExecutionError(code, message, retryable=False)


def build_units(payload: Dict[str, Any]) -> List[StyleUnit]:
    """Expand a request into units, validating its inputs."""
    mode = payload.get("mode")
    if mode not in ("batch", "refinement"):
        mode = "single"
    products = non_empty_strings(payload.get("productImages"))
    units: List[StyleUnit] = []

    if mode == "batch":
        product = payload.get("productImage")
        product = product.strip() if isinstance(product, str) else ""
        references = non_empty_strings(payload.get("referenceImages"))
        if not product:
            raise _invalid("BATCH_PRODUCT_IMAGE_REQUIRED", "Batch replicate requires one product image.")
        if not 1 <= len(references) <= 12:
            raise _invalid(
                "BATCH_REFERENCE_IMAGES_REQUIRED",
                "Batch replicate requires between 1 and 12 reference images.",
            )
        for g in range(clamp_int(payload.get("groupCount", 1), 1, 9, 1)):
            for r, reference in enumerate(references):
                units.append(StyleUnit("batch", product, reference, reference_index=r, group_index=g))

    elif mode == "single":
        reference = payload.get("referenceImage")
        reference = reference.strip() if isinstance(reference, str) else ""
        if not products:
            raise _invalid("STYLE_PRODUCT_IMAGE_MISSING", "Missing product image.")
        if not reference:
            raise _invalid("STYLE_REFERENCE_IMAGE_MISSING", "Missing reference image.")
        for p, product in enumerate(products):
            for i in range(clamp_int(payload.get("imageCount", 1), 1, 9, 1)):
                units.append(StyleUnit("single", product, reference, group_index=i, product_index=p))

    else:
        if not 1 <= len(products) <= 50:
            raise _invalid(
                "REFINEMENT_PRODUCT_IMAGES_REQUIRED",
                "Refinement mode requires between 1 and 50 product images.",
            )
        if payload.get("backgroundMode", "white") not in ("white", "original"):
            raise _invalid(
                "REFINEMENT_BACKGROUND_MODE_INVALID", "Background mode must be white or original."
            )
        for p, product in enumerate(products):
            units.append(StyleUnit("refinement", product, product_index=p))

    return units


def build_unit_prompt(unit: StyleUnit, payload: Dict[str, Any]) -> str:
    user_prompt = str(payload.get("userPrompt") or "").strip()
    if unit.mode == "refinement":
        prompt = REFINEMENT_PROMPT
        if payload.get("backgroundMode", "white") == "white":
            prompt += " " + WHITE_BACKGROUND_PROMPT
    else:
        prompt = STYLE_PROMPT
    if user_prompt:
        prompt += f"\nAdditional requirements: {user_prompt}"
    return prompt


def error_code_for(error: Exception) -> str:
    if isinstance(error, UpstreamError) and error.status_code == 404:
        return "MODEL_UNAVAILABLE"
    if isinstance(error, TaskExecutionError):
        return error.code
    return "UPSTREAM_ERROR"


@job_registry.handler(JobType.STYLE_REPLICATE)
async def replicate_style(ctx, payload):
    """
    Render every unit with bounded concurrency.

    Succeeds when at least one unit produced an image; failed units are listed
    in the result and flagged with BATCH_PARTIAL_FAILED. Fails when none did.
    """
    logger = ctx["logger"]
    job = ctx["job"]
    upstream = ctx["upstream"]
    config = ctx.get("config")

    units = build_units(payload)
    image_size = style_replicate_image_size(payload.get("imageSize"))
    concurrency = config.style_replicate_concurrency if config else 2
    if units[0].mode == "refinement":
        concurrency = max(concurrency, 8)
    semaphore = asyncio.Semaphore(max(1, concurrency))
    outputs: List[Dict[str, Any]] = [{} for _ in units]
    fatal: Dict[str, Exception] = {}

    logger.info(f"Style replicate job {job.id}: {len(units)} units, concurrency {concurrency}")

    async def run_unit(index: int, unit: StyleUnit) -> None:
        async with semaphore:
            if fatal:
                outputs[index] = {
                    **unit.position(),
                    "unit_status": "failed",
                    "error_message": "Skipped due to fatal failure in this batch.",
                }
                return
            images = [unit.reference_image, unit.product_image] if unit.reference_image else [unit.product_image]
            try:
                generated = await upstream.edit_image(images, build_unit_prompt(unit, payload))
            except Exception as e:
                code = error_code_for(e)
                if code in FATAL_CODES:
                    fatal.setdefault("error", e)
                logger.warning(f"Style replicate unit {index} of job {job.id} failed: {e}")
                outputs[index] = {
                    **unit.position(),
                    "unit_status": "failed",
                    "error_code": code,
                    "error_message": str(e),
                }
                return
            outputs[index] = {**unit.position(), **generated, "unit_status": "success"}

    await asyncio.gather(*(run_unit(i, unit) for i, unit in enumerate(units)))

    succeeded = [o for o in outputs if o.get("unit_status") == "success"]
    failed_count = len(outputs) - len(succeeded)
    if not succeeded:
        error = fatal.get("error")
        if error is None:
            raise TaskExecutionError("UPSTREAM_ERROR", f"All {len(units)} style replicate units failed")
        code = error_code_for(error)
        raise TaskExecutionError(code, str(error), retryable=code not in FATAL_CODES)

    first_url = next((o.get("url") for o in succeeded if o.get("url")), None)
    result = TaskResult(
        result_data={
            "mode": units[0].mode,
            "model": payload.get("model"),
            "image_size": image_size,
            "aspect_ratio": payload.get("aspectRatio", "1:1"),
            "outputs": outputs,
            "success_count": len(succeeded),
            "failed_count": failed_count,
        },
        result_url=first_url,
    )
    if failed_count:
        result.error_code = "BATCH_PARTIAL_FAILED"
        result.error_message = "Batch completed with partial failures."
    return result
