"""Static table of the components this service watches and updates."""

from typing import Dict

from config import settings
from schemas.system import UpdateTarget


def build_update_targets() -> Dict[str, UpdateTarget]:
    """Updatable components keyed by service name."""
    return {
        "n8n": UpdateTarget(
            service="n8n",
            image=settings.n8n_image,
            container_name=settings.n8n_container_name,
            azure_app_name=settings.n8n_container_name,
        ),
        "grafana": UpdateTarget(
            service="grafana",
            image=settings.grafana_image,
            container_name=settings.grafana_container_name,
            azure_app_name=settings.grafana_container_name,
        ),
    }


UPDATE_TARGETS = build_update_targets()

# n8n embeds a base64 JSON blob with its release in the root page
N8N_SENTRY_META = "n8n:config:sentry"
N8N_RELEASE_PREFIX = "n8n@"
