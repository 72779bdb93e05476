from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict

from .dispatcher import ToolDispatcher
from .types import ParameterSpec, ToolSpec


class BaseTool(ABC):
    """Class-based way to declare a tool: metadata plus a ``handler``.

    ``handler`` may be a plain method or a coroutine method.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def description(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def parameters(self) -> Dict[str, ParameterSpec]:
        raise NotImplementedError

    @abstractmethod
    def handler(self, params: Dict[str, object]) -> object:
        raise NotImplementedError

    def to_spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def register_into(self, dispatcher: ToolDispatcher) -> None:
        dispatcher.register(self.to_spec(), self.handler)
