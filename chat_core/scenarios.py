from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple


@dataclass(frozen=True)
class Scenario:
    name: str
    prompt: str


SCENARIOS: Tuple[Scenario, ...] = (
    Scenario(
        name="Mathematical Reasoning",
        prompt=(
            "A train travels 60 miles per hour for 2 hours, then 80 miles per hour for 1.5 hours. "
            "What is the average speed for the entire trip?"
        ),
    ),
    Scenario(
        name="Logic Puzzle",
        prompt=(
            "Three people are wearing hats that are either red or blue. Each person can see the other "
            "two hats but not their own. They are told that at least one of them is wearing a red hat. "
            "If they are asked in turn if they know the color of their own hat, what logical reasoning "
            "can they use to figure it out?"
        ),
    ),
    Scenario(
        name="Complex Problem Solving",
        prompt=(
            "You are organizing a conference with three sessions and four speakers. Each speaker can "
            "only attend two sessions, and no session can have more than two speakers. How would you "
            "assign the speakers to sessions?"
        ),
    ),
    Scenario(
        name="Ethical Reasoning",
        prompt=(
            "You see a runaway trolley heading towards five people tied up on the tracks. You can pull "
            "a lever to divert the trolley onto another track, where it will hit one person. "
            "What should you do, and why?"
        ),
    ),
)


def short_description(prompt: str, *, limit: int = 50) -> str:
    if len(prompt) <= limit:
        return prompt
    return prompt[:limit] + "..."


def menu_lines(scenarios: Tuple[Scenario, ...] = SCENARIOS) -> List[str]:
    lines = ["Choose a scenario to run:"]
    for index, scenario in enumerate(scenarios, start=1):
        lines.append(f"{index}. {scenario.name}: {short_description(scenario.prompt)}")
    lines.append("Enter the number of your choice:")
    return lines


def pick_scenario(answer: str, scenarios: Tuple[Scenario, ...] = SCENARIOS) -> Scenario | None:
    try:
        index = int(answer.strip()) - 1
    except ValueError:
        return None
    if index < 0 or index >= len(scenarios):
        return None
    return scenarios[index]
