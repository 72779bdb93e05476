from .flight_info_tool import FlightInfoTool
from .registry import available_tool_names, build_dispatcher

__all__ = [
    "FlightInfoTool",
    "available_tool_names",
    "build_dispatcher",
]
