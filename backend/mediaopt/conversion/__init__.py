from .service import ConversionService
from .models import ConversionRequest, ConversionTask, TaskStatus, SupportedFormats
from .pipeline import ConversionPipeline

__all__ = ["ConversionService", "ConversionPipeline", "ConversionRequest", "ConversionTask", "TaskStatus", "SupportedFormats"]
