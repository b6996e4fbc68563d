from __future__ import annotations

from coderflow.machines.base import Machine


class MachineRegistry:
    """Named machines available to one orchestrator session."""

    def __init__(self, machines: list[Machine] | None = None) -> None:
        self._machines: dict[str, Machine] = {}
        for machine in machines or []:
            self.register(machine)

    def register(self, machine: Machine) -> None:
        # Re-registering the same name replaces the entry; sessions may register twice.
        self._machines[machine.name] = machine

    def get(self, name: str) -> Machine:
        machine = self._machines.get(name)
        if machine is None:
            raise KeyError(f"Unknown machine: {name}")
        return machine

    def list(self) -> list[Machine]:
        return list(self._machines.values())

    def has(self, name: str) -> bool:
        return name in self._machines

    def clear(self) -> None:
        self._machines.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._machines

    def __len__(self) -> int:
        return len(self._machines)
