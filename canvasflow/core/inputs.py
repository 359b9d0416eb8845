"""Input materialization: build a node's input bag from the result store."""

import copy
import logging
from typing import Any

from canvasflow.core.graph_schema import (
    BaseNode,
    NodeOutputInputSource,
    NodeStatus,
    StaticInputSource,
)
from canvasflow.core.models import ResultStore
from canvasflow.core.scheduler import InternalSchedulingError
from canvasflow.core.variables import read_field

logger = logging.getLogger(__name__)


class InputMaterializer:
    """Resolve every parameter of a node to a concrete value.

    The bag starts from the node's static ``inputs`` map; each configured
    input source then sets its parameter:

    - static: the configured value
    - node_output: the field of the referenced node's output. The referenced
      node must already have a result; reading before that is a scheduling
      bug and raises InternalSchedulingError. A failed or skipped reference
      contributes None, as does a missing field.

    Required-ness is not checked here; evaluators decide what they need.
    """

    def materialize(self, node: BaseNode, results: ResultStore) -> dict[str, Any]:
        bag = copy.deepcopy(node.config.static_inputs())
        for name, source in node.config.input_sources.items():
            if isinstance(source, StaticInputSource):
                bag[name] = copy.deepcopy(source.value)
            elif isinstance(source, NodeOutputInputSource):
                bag[name] = self._read_reference(node, name, source, results)
        return bag

    def _read_reference(
        self,
        node: BaseNode,
        name: str,
        source: NodeOutputInputSource,
        results: ResultStore,
    ) -> Any:
        result = results.get(source.node_id)
        if result is None:
            raise InternalSchedulingError(
                f"Node '{node.id}' parameter '{name}' reads node '{source.node_id}' "
                f"before it has a result"
            )
        if result.status != NodeStatus.COMPLETED:
            logger.debug(
                f"Node '{node.id}' parameter '{name}': source '{source.node_id}' "
                f"is {result.status.value}, using None"
            )
            return None
        return copy.deepcopy(read_field(result.output, source.output_field))
