from .description import description_job
from .image import ImagePublisher, derive_version, floating_tag, image_job

__all__ = ["description_job", "image_job", "ImagePublisher", "derive_version", "floating_tag"]
