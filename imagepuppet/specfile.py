"""Load build descriptions from YAML into immutable Specifications."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from imagepuppet.config import parse_provider_config
from imagepuppet.constants import (
    DEFAULT_COPY_PERMISSIONS,
    DEFAULT_REMOTE_TIMEOUT,
    DEFAULT_WAIT_FOR_TIMEOUT,
    PACK_FORMATS,
    TEMPLATE_VAR_RE,
)
from imagepuppet.exceptions import ConfigurationError
from imagepuppet.keymap import split_combo
from imagepuppet.models import (
    Action,
    Copy,
    Credentials,
    Mount,
    PackOptions,
    Press,
    Run,
    Specification,
    Stage,
    StageKind,
    Type,
    Wait,
    WaitFor,
)
from imagepuppet.utils import parse_duration

ACTION_KEYS = ("wait", "press", "type", "wait_for", "run", "copy", "mount")


def render_templates(value: Any, variables: Mapping[str, str]) -> Any:
    """Replace ``${NAME}`` in every string of a loaded document.

    Lookup order is ``variables`` then the process environment. Plain
    ``$NAME`` is left alone so shell commands keep their own expansion.
    """

    def _replace(match) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        if name in os.environ:
            return os.environ[name]
        raise ConfigurationError(f"Undefined template variable '${{{name}}}'")

    if isinstance(value, str):
        return TEMPLATE_VAR_RE.sub(_replace, value)
    if isinstance(value, list):
        return [render_templates(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: render_templates(item, variables) for key, item in value.items()}
    return value


def _resolve_path(raw: Any, base_dir: Optional[Path]) -> Path:
    path = Path(str(raw)).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    return path


def _as_bool(raw: Any, field: str) -> bool:
    if isinstance(raw, bool):
        return raw
    raise ConfigurationError(f"{field} must be true or false (got {raw!r})")


def _permissions(raw: Any) -> int:
    if isinstance(raw, int):
        return raw
    try:
        return int(str(raw), 8)
    except ValueError:
        raise ConfigurationError(f"Invalid permissions '{raw}'; use an octal string such as '0644'")


def parse_action(raw: Any, base_dir: Optional[Path] = None) -> Action:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Each action must be a mapping (got {raw!r})")
    kinds = [key for key in raw if key in ACTION_KEYS]
    if len(kinds) != 1:
        raise ConfigurationError(f"Action must name exactly one of {', '.join(ACTION_KEYS)} (got {sorted(raw)})")
    kind = kinds[0]
    unknown = set(raw) - {kind, "description"}
    if unknown:
        raise ConfigurationError(f"Unknown field(s) for {kind}: {', '.join(sorted(unknown))}")
    value = raw[kind]
    description = raw.get("description")

    if kind == "wait":
        return Wait(duration=parse_duration(value, "wait"), description=description)

    if kind == "press":
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            key, modifiers = split_combo(str(value))
            return Press(key=key, modifiers=modifiers, description=description)
        if not isinstance(value, dict) or "key" not in value:
            raise ConfigurationError(f"press needs a key name or a mapping with 'key' (got {value!r})")
        key, combo_mods = split_combo(str(value["key"]))
        modifiers = tuple(str(mod) for mod in value.get("modifiers", ())) + combo_mods
        try:
            repeat = int(value.get("repeat", 1))
        except (TypeError, ValueError):
            raise ConfigurationError(f"press repeat must be an integer (got {value.get('repeat')!r})")
        return Press(key=key, repeat=repeat, modifiers=modifiers, description=description)

    if kind == "type":
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise ConfigurationError(f"type needs a string (got {value!r})")
        return Type(text=str(value), description=description)

    if kind == "wait_for":
        if isinstance(value, str):
            return WaitFor(pattern=value, timeout=DEFAULT_WAIT_FOR_TIMEOUT, description=description)
        if not isinstance(value, dict) or "pattern" not in value:
            raise ConfigurationError(f"wait_for needs a pattern (got {value!r})")
        return WaitFor(
            pattern=str(value["pattern"]),
            timeout=parse_duration(value.get("timeout", DEFAULT_WAIT_FOR_TIMEOUT), "wait_for timeout"),
            optional=_as_bool(value.get("optional", False), "optional"),
            description=description,
        )

    if kind == "run":
        if isinstance(value, str):
            return Run(command=value, description=description)
        if not isinstance(value, dict) or "command" not in value:
            raise ConfigurationError(f"run needs a command (got {value!r})")
        return Run(
            command=str(value["command"]),
            timeout=parse_duration(value.get("timeout", DEFAULT_REMOTE_TIMEOUT), "run timeout"),
            best_effort=_as_bool(value.get("best_effort", False), "best_effort"),
            description=description,
        )

    if kind == "copy":
        if not isinstance(value, dict) or "source" not in value or "destination" not in value:
            raise ConfigurationError(f"copy needs source and destination (got {value!r})")
        return Copy(
            source=_resolve_path(value["source"], base_dir),
            destination=str(value["destination"]),
            permissions=_permissions(value.get("permissions", DEFAULT_COPY_PERMISSIONS)),
            best_effort=_as_bool(value.get("best_effort", False), "best_effort"),
            description=description,
        )

    # mount: a path inserts media, null ejects it
    return Mount(path=_resolve_path(value, base_dir) if value else None, description=description)


def _stage_entries(raw: Any) -> List[Tuple[str, Any]]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        return list(raw.items())
    if isinstance(raw, list):
        entries = []
        for item in raw:
            if not isinstance(item, dict) or "kind" not in item:
                raise ConfigurationError(f"Stage list entries need a 'kind' (got {item!r})")
            entries.append((str(item["kind"]), item.get("actions") or []))
        return entries
    raise ConfigurationError("'stages' must be a mapping or a list")


def parse_stages(raw: Any, base_dir: Optional[Path] = None) -> Tuple[Stage, ...]:
    stages = []
    for name, actions_raw in _stage_entries(raw):
        try:
            kind = StageKind(str(name).lower())
        except ValueError:
            raise ConfigurationError(f"Unknown stage '{name}'") from None
        if actions_raw is None:
            actions_raw = []
        if not isinstance(actions_raw, list):
            raise ConfigurationError(f"Stage '{kind.value}' must hold a list of actions")
        actions = []
        for index, action_raw in enumerate(actions_raw):
            try:
                actions.append(parse_action(action_raw, base_dir))
            except ConfigurationError as exc:
                raise exc.annotate(stage=kind.value, action_index=index)
        stages.append(Stage(kind=kind, actions=tuple(actions)))
    return tuple(stages)


def parse_credentials(raw: Any, base_dir: Optional[Path] = None) -> Optional[Credentials]:
    if raw is None:
        return None
    if not isinstance(raw, dict) or not raw.get("username"):
        raise ConfigurationError("'login' needs at least a username")
    if raw.get("password") is None and raw.get("private_key") is None:
        raise ConfigurationError("'login' needs a password or a private_key")
    private_key = _resolve_path(raw["private_key"], base_dir) if raw.get("private_key") else None
    return Credentials(
        username=str(raw["username"]),
        password=str(raw["password"]) if raw.get("password") is not None else None,
        private_key=private_key,
    )


def parse_pack(raw: Any, base_dir: Optional[Path] = None) -> PackOptions:
    if raw is None:
        return PackOptions()
    if not isinstance(raw, dict):
        raise ConfigurationError("'pack' must be a mapping")
    fmt = str(raw.get("format", "iso")).lower()
    if fmt not in PACK_FORMATS:
        raise ConfigurationError(f"pack format must be one of {', '.join(sorted(PACK_FORMATS))} (got '{fmt}')")
    return PackOptions(
        output=_resolve_path(raw["output"], base_dir) if raw.get("output") else None,
        format=fmt,
        bootable=_as_bool(raw.get("bootable", True), "bootable"),
        volume_label=str(raw["volume_label"]) if raw.get("volume_label") else None,
    )


def parse_spec(
    data: Mapping[str, Any],
    base_dir: Optional[Path] = None,
    variables: Optional[Mapping[str, str]] = None,
) -> Specification:
    if not isinstance(data, dict):
        raise ConfigurationError("Build description must be a mapping")
    document_vars: Dict[str, str] = {str(k): str(v) for k, v in (data.get("variables") or {}).items()}
    document_vars.update(variables or {})
    body = render_templates({k: v for k, v in data.items() if k != "variables"}, document_vars)

    unknown = set(body) - {"name", "provider", "login", "stages", "pack"}
    if unknown:
        raise ConfigurationError(f"Unknown top-level field(s): {', '.join(sorted(unknown))}")
    if not body.get("name"):
        raise ConfigurationError("Build description needs a 'name'")

    spec = Specification(
        name=str(body["name"]),
        stages=parse_stages(body.get("stages"), base_dir),
        provider=parse_provider_config(body.get("provider"), base_dir),
        credentials=parse_credentials(body.get("login"), base_dir),
        pack=parse_pack(body.get("pack"), base_dir),
    )
    spec.validate()
    return spec


def load_spec(path: Path, variables: Optional[Mapping[str, str]] = None) -> Specification:
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Build description not found: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    return parse_spec(data or {}, base_dir=path.parent.resolve(), variables=variables)
