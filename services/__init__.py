"""Services shared by the aggregator components."""
