# kubeconsole/orchestration/stages/service_agent.py

from kubeconsole.orchestration.session_state import Node
from kubeconsole.orchestration.stages.worker import WorkerNode


class ServiceNode(WorkerNode):
    node = Node.SERVICE
    prompt_name = "service.md"
