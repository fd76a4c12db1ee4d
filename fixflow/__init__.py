"""fixflow: automated QA remediation workflow engine.

Picks up QA reports from an item tracker, runs them through analysis,
classification, implementation and publication phases, and reports the
outcome back to the tracker and a chat channel.
"""

__version__ = "0.3.0"
