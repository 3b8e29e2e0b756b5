"""crowdnode: a minimal remote-execution agent for experiment crowdsourcing."""

__version__ = "0.1.0"
