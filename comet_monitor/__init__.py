from .consensus_steps import StepInfo, classify_step
from .divergence import DivergenceAnalyzer, DivergenceDetector, diff_transactions
from .health import analyze_node_health, evaluate_consensus_health
from .monitor import NodeMonitor
from .votes import calculate_vote_ratio, parse_bit_array_ratio, parse_vote_list_ratio

__version__ = "0.1.0"
