"""
Static catalog of raceable model backends and named presets.

All lookups are pure. Unknown presets degrade to the default preset and
unknown backend ids are dropped rather than raising.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple


class ProviderFamily(Enum):
    """Provider families with a dedicated adapter."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    XAI = "xai"


class SpeedClass(Enum):
    """Rough latency class shown next to a backend."""
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"


@dataclass(frozen=True)
class BackendDescriptor:
    """One raceable model, identified by provider family and model string."""
    id: str
    display_name: str
    provider_family: ProviderFamily
    provider_model: str
    speed_class: SpeedClass
    description: str = ""


@dataclass(frozen=True)
class RacePreset:
    """Named lineup of backend ids. Duplicates are allowed."""
    id: str
    name: str
    description: str
    backend_ids: Tuple[str, ...]


@dataclass(frozen=True)
class ModelRegistry:
    """Immutable registry of backends and presets."""
    backends: Dict[str, BackendDescriptor]
    presets: Tuple[RacePreset, ...]
    default_preset_id: str

    def __post_init__(self):
        """Validate that every preset only names known backends."""
        preset_ids = {preset.id for preset in self.presets}
        if self.default_preset_id not in preset_ids:
            raise ValueError(f"Unknown default preset: {self.default_preset_id}")
        for preset in self.presets:
            unknown = [b for b in preset.backend_ids if b not in self.backends]
            if unknown:
                raise ValueError(f"Preset '{preset.id}' references unknown backends: {unknown}")

    def list_backends(self) -> FrozenSet[BackendDescriptor]:
        """Return every registered backend."""
        return frozenset(self.backends.values())

    def list_presets(self) -> Tuple[RacePreset, ...]:
        """Return presets in display order."""
        return self.presets

    def get_backend(self, backend_id: str) -> BackendDescriptor:
        """Get a backend by id.

        Args:
            backend_id: Backend identifier

        Returns:
            BackendDescriptor for the id

        Raises:
            ValueError: If backend is not registered
        """
        if backend_id not in self.backends:
            raise ValueError(f"Unknown backend: {backend_id}")
        return self.backends[backend_id]

    def get_preset(self, preset_id: Optional[str]) -> RacePreset:
        """Get a preset by id, falling back to the default preset."""
        for preset in self.presets:
            if preset.id == preset_id:
                return preset
        for preset in self.presets:
            if preset.id == self.default_preset_id:
                return preset
        # __post_init__ guarantees the default exists
        raise AssertionError("default preset missing")

    def resolve_preset(self, preset_id: Optional[str]) -> List[BackendDescriptor]:
        """Resolve a preset to its ordered backend list.

        Unknown or missing preset ids resolve to the default preset, so the
        result is never empty.
        """
        preset = self.get_preset(preset_id)
        return [self.backends[backend_id] for backend_id in preset.backend_ids]

    def resolve_custom(self, backend_ids: Iterable[str], max_backends: int) -> List[BackendDescriptor]:
        """Resolve an explicit backend selection.

        Unknown ids are dropped, request order is preserved and the result
        is truncated to max_backends without error.
        """
        if max_backends <= 0:
            return []
        resolved = []
        for backend_id in backend_ids:
            backend = self.backends.get(backend_id)
            if backend is None:
                continue
            resolved.append(backend)
            if len(resolved) == max_backends:
                break
        return resolved


def _backend(id, display_name, family, provider_model, speed, description):
    return BackendDescriptor(
        id=id,
        display_name=display_name,
        provider_family=family,
        provider_model=provider_model,
        speed_class=speed,
        description=description,
    )


_BACKENDS = [
    # OpenAI
    _backend("gpt-4.1", "GPT-4.1", ProviderFamily.OPENAI, "gpt-4.1",
             SpeedClass.MEDIUM, "Latest GPT-4.1 model"),
    _backend("gpt-4.1-mini", "GPT-4.1 Mini", ProviderFamily.OPENAI, "gpt-4.1-mini",
             SpeedClass.FAST, "Fast & efficient GPT-4.1"),
    _backend("gpt-4.1-nano", "GPT-4.1 Nano", ProviderFamily.OPENAI, "gpt-4.1-nano",
             SpeedClass.FAST, "Fastest GPT model"),
    _backend("gpt-4o", "GPT-4o", ProviderFamily.OPENAI, "gpt-4o",
             SpeedClass.MEDIUM, "GPT-4 Omni multimodal"),
    _backend("o3-mini", "o3-mini", ProviderFamily.OPENAI, "o3-mini",
             SpeedClass.SLOW, "Reasoning model"),
    # Anthropic
    _backend("claude-opus-4", "Claude Opus 4", ProviderFamily.ANTHROPIC, "claude-opus-4-20250514",
             SpeedClass.SLOW, "Most powerful Claude"),
    _backend("claude-sonnet-4", "Claude Sonnet 4", ProviderFamily.ANTHROPIC, "claude-sonnet-4-20250514",
             SpeedClass.MEDIUM, "Balanced Claude model"),
    _backend("claude-haiku-3.5", "Claude Haiku 3.5", ProviderFamily.ANTHROPIC, "claude-3-5-haiku-20241022",
             SpeedClass.FAST, "Fastest Claude model"),
    # Google
    _backend("gemini-2.5-pro", "Gemini 2.5 Pro", ProviderFamily.GOOGLE, "gemini-2.5-pro-preview-06-05",
             SpeedClass.MEDIUM, "Most capable Gemini"),
    _backend("gemini-2.5-flash", "Gemini 2.5 Flash", ProviderFamily.GOOGLE, "gemini-2.5-flash-preview-05-20",
             SpeedClass.FAST, "Fast Gemini model"),
    _backend("gemini-2.0-flash", "Gemini 2.0 Flash", ProviderFamily.GOOGLE, "gemini-2.0-flash",
             SpeedClass.FAST, "Stable fast Gemini"),
    # xAI
    _backend("grok-3", "Grok 3", ProviderFamily.XAI, "grok-3",
             SpeedClass.MEDIUM, "Latest Grok model"),
    _backend("grok-3-fast", "Grok 3 Fast", ProviderFamily.XAI, "grok-3-fast",
             SpeedClass.FAST, "Fast Grok variant"),
]

_PRESETS = (
    RacePreset("speed-demons", "Speed Demons", "Fastest models from each provider",
               ("gpt-4.1-mini", "claude-haiku-3.5", "gemini-2.5-flash", "grok-3-fast")),
    RacePreset("flagship-battle", "Flagship Battle", "Top-tier models head-to-head",
               ("gpt-4.1", "claude-opus-4", "gemini-2.5-pro", "grok-3")),
    RacePreset("balanced-mix", "Balanced Mix", "Best balance of speed & quality",
               ("gpt-4o", "claude-sonnet-4", "gemini-2.5-flash", "grok-3")),
    RacePreset("claude-showdown", "Claude Showdown", "All Claude models compete",
               ("claude-opus-4", "claude-sonnet-4", "claude-haiku-3.5", "claude-haiku-3.5")),
    RacePreset("openai-arena", "OpenAI Arena", "GPT models face off",
               ("gpt-4.1", "gpt-4.1-mini", "gpt-4o", "o3-mini")),
    RacePreset("classic", "Classic Race", "Original lineup",
               ("gpt-4o", "claude-sonnet-4", "gemini-2.0-flash", "grok-3-fast")),
)

DEFAULT_PRESET_ID = "speed-demons"

# Fixed catalog - no dynamic model discovery
DEFAULT_REGISTRY = ModelRegistry(
    backends={backend.id: backend for backend in _BACKENDS},
    presets=_PRESETS,
    default_preset_id=DEFAULT_PRESET_ID,
)
