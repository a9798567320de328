"""KidVolts JSON API with optional FastAPI dependencies."""
from __future__ import annotations

from importlib import import_module
from types import ModuleType
from typing import Any, List

_IMPL_MODULE: ModuleType | None = None

_OPTIONAL_MODULES = {"fastapi", "starlette", "pydantic"}

__all__: List[str] = ["create_app"]


def _load_impl() -> ModuleType:
    global _IMPL_MODULE
    if _IMPL_MODULE is not None:
        return _IMPL_MODULE
    try:
        module = import_module(".application", __name__)
    except ModuleNotFoundError as exc:
        if exc.name in _OPTIONAL_MODULES:
            raise RuntimeError(
                "kidvolts.webapp requires the optional FastAPI dependency. "
                "Install it via `pip install kidvolts[web]`."
            ) from exc
        raise
    _IMPL_MODULE = module
    return module


def __getattr__(name: str) -> Any:
    module = _load_impl()
    return getattr(module, name)


def __dir__() -> List[str]:
    names = set(globals()) | set(__all__)
    try:
        module = _load_impl()
    except RuntimeError:
        return sorted(names)
    return sorted(names | set(dir(module)))
