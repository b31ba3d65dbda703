"""
Scheduling core test suite.

Queue ordering, scheduler ticks, container runner classification,
persistence, crash recovery and the wired AutoTestService.
"""
