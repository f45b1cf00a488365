# kubeconsole/orchestration/stages/cluster_agent.py

from kubeconsole.orchestration.session_state import Node
from kubeconsole.orchestration.stages.worker import WorkerNode


class ClusterNode(WorkerNode):
    """
    Cluster administrator: cluster listing, cluster detail and kubectl.
    """

    node = Node.CLUSTER
    prompt_name = "cluster.md"
