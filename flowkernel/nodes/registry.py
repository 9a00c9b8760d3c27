from __future__ import annotations

from typing import Dict, Optional

from flowkernel.nodes.base import NodeProcessor, NodeServices
from flowkernel.nodes.branching import ConditionProcessor, SwitchProcessor
from flowkernel.nodes.code import CodeProcessor
from flowkernel.nodes.entry import InputProcessor, TriggerProcessor
from flowkernel.nodes.http import HttpProcessor
from flowkernel.nodes.loop import BodyRunner, LoopProcessor
from flowkernel.nodes.merge import MergeProcessor
from flowkernel.nodes.notification import NotificationProcessor
from flowkernel.nodes.output import OutputProcessor
from flowkernel.nodes.process import MediaProcessor, ProcessProcessor


class ProcessorRegistry:
    """Maps canonical node types to processors.

    GROUP has no processor: groups are flattened before scheduling.
    """

    def __init__(self, processors: Dict[str, NodeProcessor]) -> None:
        self._processors = dict(processors)

    def get(self, node_type: str) -> Optional[NodeProcessor]:
        return self._processors.get("PROCESS" if node_type == "AI" else node_type)

    def register(self, node_type: str, processor: NodeProcessor) -> None:
        self._processors[node_type] = processor

    def types(self):
        return sorted(self._processors)


def build_registry(services: NodeServices, body_runner: BodyRunner) -> ProcessorRegistry:
    media = MediaProcessor(services)
    return ProcessorRegistry(
        {
            "INPUT": InputProcessor(services),
            "TRIGGER": TriggerProcessor(services),
            "PROCESS": ProcessProcessor(services),
            "CODE": CodeProcessor(services),
            "CONDITION": ConditionProcessor(services),
            "SWITCH": SwitchProcessor(services),
            "LOOP": LoopProcessor(services, body_runner),
            "HTTP": HttpProcessor(services),
            "MERGE": MergeProcessor(services),
            "OUTPUT": OutputProcessor(services),
            "NOTIFICATION": NotificationProcessor(services),
            "IMAGE": media,
            "VIDEO": media,
            "AUDIO": media,
        }
    )
