from __future__ import annotations

import logging
from typing import Iterable, List

from chat_core.dispatcher import ToolDispatcher
from chat_core.tool_base import BaseTool

from .flight_info_tool import FlightInfoTool


def _all_tools() -> List[BaseTool]:
    return [FlightInfoTool()]


def available_tool_names() -> List[str]:
    return [tool.name for tool in _all_tools()]


def build_dispatcher(
    tool_names: Iterable[str] | None = None,
    *,
    logger: logging.Logger | None = None,
) -> ToolDispatcher:
    by_name = {tool.name: tool for tool in _all_tools()}
    selected = list(by_name) if tool_names is None else list(tool_names)
    dispatcher = ToolDispatcher(logger=logger)
    for name in selected:
        if name not in by_name:
            raise ValueError(f"Unknown tool name: {name}")
        by_name[name].register_into(dispatcher)
    return dispatcher
