from .loader import load_config, load_config_with_overrides
from .schema import PipelineConfig, PropagationConfig, DownloadFileConfig

__all__ = [
    "load_config",
    "load_config_with_overrides",
    "PipelineConfig",
    "PropagationConfig",
    "DownloadFileConfig",
]
