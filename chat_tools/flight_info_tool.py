from __future__ import annotations

from typing import Dict

from chat_core.tool_base import BaseTool
from chat_core.types import ParameterSpec

# Mock timetable; a real deployment would query a flight API here.
_FLIGHTS: Dict[tuple[str, str], Dict[str, str]] = {
    ("Seattle", "Miami"): {
        "airline": "Delta",
        "flight_number": "DL123",
        "flight_date": "July 16th, 2025",
        "flight_time": "10:00AM",
    },
}


class FlightInfoTool(BaseTool):
    @property
    def name(self) -> str:
        return "getFlightInfo"

    @property
    def description(self) -> str:
        return (
            "Returns information about the next flight between two cities. "
            "This includes the name of the airline, flight number and the date and time "
            "of the next flight"
        )

    @property
    def parameters(self) -> Dict[str, ParameterSpec]:
        return {
            "originCity": ParameterSpec(
                type="string",
                description="The name of the city where the flight originates",
                required=True,
            ),
            "destinationCity": ParameterSpec(
                type="string",
                description="The flight destination city",
                required=True,
            ),
        }

    def handler(self, params: Dict[str, object]) -> Dict[str, str]:
        flight = _FLIGHTS.get((str(params["originCity"]), str(params["destinationCity"])))
        if flight is None:
            return {"error": "No flights found between the cities"}
        return dict(flight)
