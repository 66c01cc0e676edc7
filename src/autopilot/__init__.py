"""
Workflow Autopilot

Scheduled and event-triggered replay of captured browser workflows:
- Interval, at-time, keyword and DOM-change triggers
- Ordered step interpretation with parameter substitution
- Sub-workflow composition
- Sandboxed script steps with correlated replies
"""

__version__ = "0.1.0"
