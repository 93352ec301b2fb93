"""Read-only snapshot for dashboards: capabilities, quota and savings."""
from mediaopt.config import ConversionSettings
from mediaopt.conversion.capabilities import CapabilityDetector
from mediaopt.quota import QuotaGate
from mediaopt.tracker import ConversionTracker


def status_snapshot(
    settings: ConversionSettings,
    detector: CapabilityDetector,
    quota: QuotaGate,
    tracker: ConversionTracker,
) -> dict:
    return {
        "capabilities": detector.get_matrix().to_dict(),
        "quota": {**quota.current().to_dict(), "progress": quota.progress()},
        "stats": tracker.stats(),
        "settings": {
            "image_formats": list(settings.image_formats),
            "video_formats": list(settings.video_formats),
            "hybrid": settings.hybrid,
            "external_enabled": settings.external_enabled,
            "external_configured": bool(settings.account_id and settings.external_service_url),
        },
    }
