"""Task handlers for the generation pipeline.

Importing this package registers every handler on ``job_registry``.
"""

from studio_jobs.handlers import analysis, image_gen, style_replicate

__all__ = ["analysis", "image_gen", "style_replicate"]
