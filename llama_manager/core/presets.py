"""
Preset Data Model

A preset is a named, durable launch configuration: a model source (local
file or Hugging Face repo) plus the runtime and sampling parameters the
engine should use for it. Presets are stored in the state file with
camelCase keys, which is also the shape the HTTP API accepts and returns.

This module also holds the helpers used to generate presets automatically
from model file names and repo strings:

    >>> generate_preset_id("Qwen2.5-Coder-32B-Instruct-Q5_K_M.gguf")
    'qwen2.5-coder-32b-instruct'
    >>> generate_preset_id("unsloth/Qwen3-Coder-30B-A3B-Instruct-GGUF:Q5_K_M")
    'qwen3-coder-30b-a3b-instruct'
"""

import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidPresetError, ModelFileNotFoundError


PRESET_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._-]*$")
MODEL_EXTENSION = ".gguf"
TEMPLATE_SWITCH = "--jinja"

DEFAULT_TEMP = 0.7
DEFAULT_TOP_P = 1.0
DEFAULT_TOP_K = 20
DEFAULT_MIN_P = 0.0

# Longer and more specific patterns first.
QUANTIZATION_PATTERNS = [
    re.compile(r"-IQ\d_[A-Z]+$", re.IGNORECASE),
    re.compile(r"-IQ\d[A-Z]+$", re.IGNORECASE),
    re.compile(r"-Q\d_K_[A-Z]+$", re.IGNORECASE),
    re.compile(r"-Q\d_K$", re.IGNORECASE),
    re.compile(r"-Q\d_[A-Z]+$", re.IGNORECASE),
    re.compile(r"-Q\d[A-Z]+$", re.IGNORECASE),
    re.compile(r"-Q\d$", re.IGNORECASE),
    re.compile(r"-F\d\d$", re.IGNORECASE),
    re.compile(r"-F\d$", re.IGNORECASE),
    re.compile(r"-FP\d\d$", re.IGNORECASE),
    re.compile(r"-BF16$", re.IGNORECASE),
    re.compile(r"-GGUF$", re.IGNORECASE),
]

SHARD_SUFFIX = re.compile(r"-\d{5}-of-\d{5}$", re.IGNORECASE)
FIRST_SHARD = re.compile(r"-00001-of-\d{5}\.gguf$", re.IGNORECASE)


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class PresetConfig(_CamelModel):
    """
    Runtime and sampling parameters of a preset.

    Sampling fields (temp, top_p, top_k, min_p, chat_template_kwargs) are
    applied per request by the proxy. Launch fields (reasoning_format,
    gpu_layers, flash_attn, extra_switches) require an engine restart when
    they differ from the running configuration. A launch field left as None
    inherits the running value.
    """

    temp: Optional[float] = DEFAULT_TEMP
    top_p: Optional[float] = DEFAULT_TOP_P
    top_k: Optional[int] = DEFAULT_TOP_K
    min_p: Optional[float] = DEFAULT_MIN_P
    chat_template_kwargs: Union[str, Dict[str, Any], None] = ""
    reasoning_format: Optional[str] = None
    gpu_layers: Optional[int] = Field(default=None, ge=0, le=999)
    flash_attn: Optional[bool] = None
    extra_switches: str = TEMPLATE_SWITCH

    @field_validator("reasoning_format", mode="before")
    @classmethod
    def empty_reasoning_format(cls, v):
        # Stored presets use "" for "not set"
        if v == "":
            return None
        return v

    @field_validator("extra_switches", mode="before")
    @classmethod
    def default_switches(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return TEMPLATE_SWITCH
        return v


class Preset(_CamelModel):
    """
    A named launch configuration.

    Attributes:
        id: Unique key, also the model id clients request
        name: Display name
        description: Free text
        model_path: Absolute path of a local model file
        hf_repo: Remote "org/repo:quant" string; wins over model_path
        context: Context size, 0 means "use the engine default"
        config: Runtime and sampling parameters
        auto_generated: Created by the model scan or a download hook
        created_at: ISO timestamp for auto-generated presets
    """

    id: str
    name: str
    description: str = ""
    model_path: Optional[str] = None
    hf_repo: Optional[str] = None
    context: int = Field(default=0, ge=0)
    config: PresetConfig = Field(default_factory=PresetConfig)
    auto_generated: bool = False
    created_at: Optional[str] = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Preset id must not be empty")
        return v

    @field_validator("model_path", "hf_repo", mode="before")
    @classmethod
    def empty_source(cls, v):
        if v == "":
            return None
        return v

    @field_validator("context", mode="before")
    @classmethod
    def null_context(cls, v):
        return 0 if v is None else v

    @model_validator(mode="after")
    def hf_repo_wins(self) -> "Preset":
        if self.hf_repo:
            self.model_path = None
        return self

    @property
    def source(self) -> Optional[str]:
        """The authoritative model source (hf_repo when set, else model_path)."""
        return self.hf_repo or self.model_path

    def to_store(self) -> dict:
        return self.model_dump(by_alias=True)


def validate_preset_id(preset_id: str) -> str:
    if not PRESET_ID_PATTERN.match(preset_id or ""):
        raise InvalidPresetError(
            "ID must start with a lowercase letter or digit and contain only "
            "lowercase letters, digits, dots, underscores and hyphens"
        )
    return preset_id


def resolve_model_file(model_path: str, models_dir: str) -> str:
    """
    Resolve a preset model path to an existing file.

    Relative paths are taken under the model root. A path naming the base
    name of a split model (name.gguf) resolves to its first shard
    (name-00001-of-NNNNN.gguf).

    Raises:
        ModelFileNotFoundError: If neither the file nor a first shard exists
    """
    full_path = model_path if os.path.isabs(model_path) else os.path.join(models_dir, model_path)
    if os.path.isfile(full_path):
        return full_path

    base = os.path.basename(re.sub(r"\.gguf$", "", full_path, flags=re.IGNORECASE))
    directory = os.path.dirname(full_path)
    if os.path.isdir(directory):
        for name in sorted(os.listdir(directory)):
            if name.startswith(base) and FIRST_SHARD.search(name):
                return os.path.join(directory, name)

    raise ModelFileNotFoundError(model_path)


def _strip_source(source: str) -> str:
    name = source
    if "/" in source:
        name = source.split("/")[-1]
        name = name.split(":")[0]
    return re.sub(r"\.gguf$", "", name, flags=re.IGNORECASE)


def generate_preset_id(source: str) -> str:
    """
    Generate a clean lowercase preset id from a file name or repo string.

    Strips the org prefix, ":quant" suffix, extension, quantisation and
    shard suffixes.
    """
    name = SHARD_SUFFIX.sub("", _strip_source(source))
    for pattern in QUANTIZATION_PATTERNS:
        name = pattern.sub("", name)
    name = name.lower()
    name = re.sub(r"[_\s]+", "-", name)
    name = re.sub(r"--+", "-", name)
    return name.rstrip("-")


def extract_model_name(source: str, include_quantization: bool = False) -> str:
    """
    Extract a human-readable display name from a file name or repo string.

    Case is preserved. With include_quantization the first quantisation
    suffix found is appended after a space (e.g. "Qwen3-8B Q4_K_M").
    """
    name = SHARD_SUFFIX.sub("", _strip_source(source))
    quant_suffix = ""
    for pattern in QUANTIZATION_PATTERNS:
        match = pattern.search(name)
        if match:
            if include_quantization and not quant_suffix:
                quant_suffix = " " + match.group(0).lstrip("-")
            name = pattern.sub("", name)
    name = name.replace("_", " ").rstrip("-")
    return name + quant_suffix


def ensure_unique_preset_id(base_id: str, existing: Iterable[str]) -> str:
    taken = set(existing)
    if base_id not in taken:
        return base_id
    suffix = 2
    while f"{base_id}-{suffix}" in taken:
        suffix += 1
    return f"{base_id}-{suffix}"


def create_default_preset(
    existing_ids: Iterable[str],
    model_path: Optional[str] = None,
    hf_repo: Optional[str] = None,
    filename: Optional[str] = None
) -> Preset:
    """
    Build an auto-generated preset for a model file or repo.

    Args:
        existing_ids: Ids already in use
        model_path: Full path of the model file
        hf_repo: Hugging Face repo string
        filename: Model file name used for id and display name

    Returns:
        A new Preset with default sampling parameters and context 0
    """
    source = hf_repo or filename or os.path.basename(model_path or "")
    preset_id = ensure_unique_preset_id(generate_preset_id(source), existing_ids)
    return Preset(
        id=preset_id,
        name=extract_model_name(source, include_quantization=True),
        description=f"Auto-generated preset for {extract_model_name(source)}",
        model_path=model_path,
        hf_repo=hf_repo,
        context=0,
        config=PresetConfig(),
        auto_generated=True,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def is_projector_file(path: str) -> bool:
    name = Path(path).name.lower()
    return name.startswith("mmproj-") or name.startswith("mmproj_")
