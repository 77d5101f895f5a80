"""
Service layer.

Services own business rules and commits; blueprints only translate HTTP.
The app factory builds one ``DiscoveryServices`` bundle with explicit
dependencies and stores it on ``app.extensions["discovery"]``.
"""

from dataclasses import dataclass

from flask import current_app


@dataclass
class DiscoveryServices:
    gateway: object
    prompt_registry: object
    interpreter: object
    lock: object
    state_machine: object
    reanalysis: object
    generator: object

    @property
    def store(self):
        return self.state_machine.store

    @property
    def evidence(self):
        return self.state_machine.evidence

    @property
    def findings(self):
        return self.state_machine.findings


def get_services() -> DiscoveryServices:
    return current_app.extensions["discovery"]
