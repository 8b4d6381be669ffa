"""RPC method registry.

Each registered method is a MethodSpec: the handler, whether it streams,
and an optional Pydantic model its params are validated against. Handler
shape is checked once at registration so dispatch never has to guess
whether a result is a stream.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterator, Callable, Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


@dataclass(frozen=True)
class MethodSpec:
    """A registered RPC method.

    Attributes:
        name: Method name as sent on the wire.
        handler: Callable invoked with the request params (or the validated
            params model). May be sync, async, or an async generator function.
        streaming: Whether the handler produces an async sequence whose items
            are pushed as chunk notifications.
        params_model: Optional Pydantic model used to validate params.
        takes_params: Whether the handler accepts a params argument.
    """

    name: str
    handler: Handler
    streaming: bool = False
    params_model: type[BaseModel] | None = None
    takes_params: bool = True


def _accepts_argument(handler: Handler) -> bool:
    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        # Builtins without introspectable signatures get the params
        return True

    for param in signature.parameters.values():
        if param.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
            inspect.Parameter.VAR_POSITIONAL,
        ):
            return True
    return False


class MethodRegistry:
    """Name -> MethodSpec mapping. Last registration for a name wins."""

    def __init__(self) -> None:
        self._methods: dict[str, MethodSpec] = {}

    def register(
        self,
        name: str,
        handler: Handler,
        *,
        streaming: bool = False,
        params_model: type[BaseModel] | None = None,
    ) -> MethodSpec:
        """Register (or replace) a method.

        Raises:
            ValueError: If the name is empty.
            TypeError: If the handler is not callable, the params model is not
                a Pydantic model, or an async generator function is registered
                without streaming=True.
        """
        if not isinstance(name, str) or not name:
            raise ValueError("Method name must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"Handler for {name!r} is not callable")
        if params_model is not None and not (
            isinstance(params_model, type) and issubclass(params_model, BaseModel)
        ):
            raise TypeError(f"params_model for {name!r} must be a pydantic BaseModel subclass")
        if inspect.isasyncgenfunction(handler) and not streaming:
            raise TypeError(
                f"Handler for {name!r} is an async generator; register it with streaming=True"
            )

        spec = MethodSpec(
            name=name,
            handler=handler,
            streaming=streaming,
            params_model=params_model,
            takes_params=_accepts_argument(handler),
        )
        if name in self._methods:
            logger.debug("Replacing handler for %s", name)
        self._methods[name] = spec
        return spec

    def unregister(self, name: str) -> None:
        self._methods.pop(name, None)

    def get(self, name: str) -> MethodSpec | None:
        return self._methods.get(name)

    def names(self) -> list[str]:
        return sorted(self._methods)

    def __contains__(self, name: object) -> bool:
        return name in self._methods

    def __len__(self) -> int:
        return len(self._methods)

    def __iter__(self) -> Iterator[str]:
        return iter(self._methods)

    async def invoke(self, spec: MethodSpec, params: Any) -> Any:
        """Call a handler and return its result.

        For streaming methods the result is an async iterator; for all others
        it is the awaited value, sent as-is even if it happens to be iterable.

        Raises:
            pydantic.ValidationError: If params do not match params_model.
            TypeError: If a streaming handler does not produce an async iterable.
            Exception: Whatever the handler raises.
        """
        args: tuple[Any, ...] = ()
        if spec.params_model is not None:
            args = (spec.params_model.model_validate({} if params is None else params),)
        elif spec.takes_params:
            args = (params,)

        result = spec.handler(*args)
        if inspect.isawaitable(result):
            result = await result

        if spec.streaming:
            if not hasattr(result, "__aiter__"):
                raise TypeError(
                    f"Streaming method {spec.name!r} returned {type(result).__name__}, "
                    "expected an async iterable"
                )
            stream: AsyncIterator[Any] = result.__aiter__()
            return stream
        return result
