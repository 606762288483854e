"""Materialise a :class:`ServiceSpec` into a docker-compose definition."""
from __future__ import annotations

from dataclasses import dataclass, field

from .manifest import Manifest, ServiceSpec
from .templates import TemplateEngine

COMPOSE_TEMPLATE = "compose/service.yml.j2"
PUBLIC_FILE_MODE = 0o644
SECRET_FILE_MODE = 0o600


@dataclass(slots=True)
class ComposeMaterializer:
    """Render deterministic compose files: the same spec yields identical bytes."""

    templates: TemplateEngine = field(default_factory=lambda: TemplateEngine.with_overrides(None))

    def render(self, manifest: Manifest, spec: ServiceSpec) -> str:
        """Return the compose definition for *spec* as text."""
        context = {
            "service": spec,
            "container_name": manifest.container_name(spec),
            "restart": spec.restart.compose_value,
            "cap_add": list(spec.cap_add),
            "ports": [str(port) for port in sorted(spec.ports)],
            "volumes": [str(volume) for volume in sorted(spec.volumes)],
            "environment": sorted(spec.environment.items()),
            "network": manifest.network,
        }
        return self.templates.render_to_string(COMPOSE_TEMPLATE, context)

    def render_bytes(self, manifest: Manifest, spec: ServiceSpec) -> bytes:
        """Return the UTF-8 encoded compose definition for *spec*."""
        return self.render(manifest, spec).encode("utf-8")

    @staticmethod
    def file_mode(spec: ServiceSpec) -> int:
        """Return the file mode for *spec*'s compose file."""
        return SECRET_FILE_MODE if spec.has_secrets else PUBLIC_FILE_MODE


__all__ = ["COMPOSE_TEMPLATE", "ComposeMaterializer"]
