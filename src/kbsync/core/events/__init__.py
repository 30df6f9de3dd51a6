from .aggregator import ChangeEventAggregator, action_for_status_change

__all__ = ["ChangeEventAggregator", "action_for_status_change"]
