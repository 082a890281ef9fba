"""Device profile loading and validation for YAML-based canflash profiles."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from canflash.core.codec import MAX_TARGET_ID
from canflash.core.errors import ProfileLoadError, ProfileSelectionError, ProfileValidationError
from canflash.core.model import BusSpec, FlashLayout, Profile, Timeouts

DEFAULT_PROFILE_ID = "default"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ProfileValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedProfiles:
    profiles: dict[str, Profile]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("canflash.schemas").joinpath("profile.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def profile_dirs() -> tuple[Path, Path]:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_config / "canflash/profiles", xdg_data / "canflash/profiles"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ProfileLoadError(f"Could not read profile file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ProfileValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ProfileValidationError(f"Profile file {path} must contain a mapping at root")
    return loaded


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise ProfileValidationError(f"{context} must be boolean true/false")


def _build_profile(doc: dict[str, Any], source: Path | Traversable) -> Profile:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ProfileValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    target_id = int(doc.get("target_id", 0x01))
    if target_id > MAX_TARGET_ID:
        raise ProfileValidationError(
            f"{doc['id']}.target_id must be between 0 and 0x{MAX_TARGET_ID:02X}"
        )

    bus_doc = doc["bus"]
    bitrate = bus_doc.get("bitrate")
    bus = BusSpec(
        channel=str(bus_doc["channel"]),
        interface=bus_doc.get("interface", "socketcan"),
        bitrate=int(bitrate) if bitrate is not None else None,
    )

    timeouts_doc = doc.get("timeouts", {})
    timeouts = Timeouts(
        ack_s=float(timeouts_doc.get("ack_s", 10.0)),
        checksum_s=float(timeouts_doc.get("checksum_s", 1.0)),
    )

    flash: FlashLayout | None = None
    if "flash" in doc:
        flash_doc = doc["flash"]
        if flash_doc["app_end"] <= flash_doc["app_start"]:
            raise ProfileValidationError(f"{doc['id']}.flash.app_end must be above app_start")
        flash = FlashLayout(
            app_start=int(flash_doc["app_start"]),
            app_end=int(flash_doc["app_end"]),
            flash_size_kb=int(flash_doc["flash_size_kb"]),
            ram_size_kb=int(flash_doc["ram_size_kb"]),
        )

    return Profile(
        id=doc["id"],
        name=doc["name"],
        bus=bus,
        target_id=target_id,
        timeouts=timeouts,
        flash=flash,
        verbose=_normalize_bool(doc.get("verbose", True), context=f"{doc['id']}.verbose"),
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("canflash.profiles")
    return [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in profile_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_profiles() -> LoadedProfiles:
    profiles: dict[str, Profile] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_profile_paths(), key=lambda p: p.name):
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        profiles[profile.id] = profile

    for path in _iter_user_profile_paths():
        doc = _read_yaml(path)
        profile = _build_profile(doc, path)
        if profile.id in profiles:
            warning = f"User profile '{profile.id}' overrides packaged profile"
            LOGGER.warning(warning)
            warnings.append(warning)
        profiles[profile.id] = profile

    return LoadedProfiles(profiles=profiles, warnings=tuple(warnings))


def select_profile(profiles: dict[str, Profile], profile_id: str | None) -> Profile:
    wanted = profile_id or DEFAULT_PROFILE_ID
    profile = profiles.get(wanted)
    if profile is None:
        available = ", ".join(sorted(profiles)) or "<none>"
        raise ProfileSelectionError(f"Unknown profile '{wanted}'. Available: {available}")
    return profile
