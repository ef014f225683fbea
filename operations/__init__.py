"""
@operation decorator — marks a function as a connector operation.

Usage:
    from operations import operation

    @operation()
    async def list_items(variables):
        ...

    @operation("contacts.search")
    async def search_contacts(variables):
        ...

Decorated functions are picked up by ``MethodRegistry.register_module``.
"""

from __future__ import annotations

from typing import Callable, Optional


def operation(name: Optional[str] = None) -> Callable:
    """
    Decorator that tags a function as a connector operation.

    Parameters
    ----------
    name : dotted operation path; defaults to the function name.
    """

    def decorator(func: Callable) -> Callable:
        func.is_operation = True  # type: ignore[attr-defined]
        func.operation_name: str = name or func.__name__  # type: ignore[attr-defined]
        return func

    return decorator
