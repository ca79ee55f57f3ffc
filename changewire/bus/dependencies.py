"""Bus adapter dependency checks."""

from __future__ import annotations

from importlib.util import find_spec

_ADAPTER_DEPENDENCIES: dict[str, tuple[str, str]] = {
    "kafka": ("aiokafka", "pip install aiokafka"),
}


def ensure_bus_dependency(adapter_type: str) -> None:
    """Validate the client library for a concrete bus adapter is importable."""
    normalized = adapter_type.strip().lower()
    if normalized == "memory":
        return
    dependency = _ADAPTER_DEPENDENCIES.get(normalized)
    if dependency is None:
        supported = ", ".join(sorted([*list(_ADAPTER_DEPENDENCIES.keys()), "memory"]))
        raise ValueError(f"Unsupported bus adapter type: {adapter_type}. Supported: {supported}")

    package_name, install_command = dependency
    if find_spec(package_name) is not None:
        return
    raise RuntimeError(
        f"Bus adapter '{normalized}' requires dependency '{package_name}'. Install with: {install_command}"
    )
