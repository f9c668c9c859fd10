from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class CliPaths:
    """Centralizes filesystem paths used by the Perplexity CLI."""

    root: Path = field(default_factory=lambda: Path.home() / ".perplexity-cli")

    @property
    def config_file(self) -> Path:
        return self.root / "config.json"

    @property
    def conversations_dir(self) -> Path:
        return self.root / "conversations"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def input_history_file(self) -> Path:
        return self.root / "input_history"
