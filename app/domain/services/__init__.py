"""Domain services."""

import importlib

__all__ = ["AutoMatchResolver", "InboundPipeline", "OutboundDispatcher", "ReplyEngine"]

# Re-exports are resolved lazily: inbound_pipeline imports the automation
# engine, which itself imports submodules of this package, so eager imports
# here create a circular import when the engine is imported first.
_EXPORTS = {
    "AutoMatchResolver": "app.domain.services.auto_match_service",
    "InboundPipeline": "app.domain.services.inbound_pipeline",
    "OutboundDispatcher": "app.domain.services.outbound_dispatcher",
    "ReplyEngine": "app.domain.services.reply_engine",
}


def __getattr__(name):
    if name in _EXPORTS:
        return getattr(importlib.import_module(_EXPORTS[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
