"""Game runtime services: instance lifecycle, enrollment, turns and scheduling.

HTTP routes, socket handlers and job workers call into these modules, keeping
transport concerns separated from the turn-sheet engine.
"""
