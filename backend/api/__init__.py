# api/__init__.py
from api.container import Container, build_container
from api.identity import Actor, resolve_actor, require_roles

__all__ = [
    "Container",
    "build_container",
    "Actor",
    "resolve_actor",
    "require_roles",
]
