"""StoreAssist: knowledge base indexing and retrieval for a storefront assistant."""

from importlib import import_module, metadata

_LAZY = {
    "build_pipeline": "storeassist.bootstrap",
    "Pipeline": "storeassist.bootstrap",
    "get_settings": "storeassist.config",
    "Settings": "storeassist.config",
    "RagRequest": "storeassist.services.rag",
    "RagResponse": "storeassist.services.rag",
}


def __getattr__(name: str):
    if name == "__version__":
        try:
            return metadata.version("storeassist")
        except metadata.PackageNotFoundError:  # pragma: no cover - source checkout
            return "0.0.0"
    module = _LAZY.get(name)
    if module is None:
        raise AttributeError(name)
    return getattr(import_module(module), name)


__all__ = ["__version__", *_LAZY]
