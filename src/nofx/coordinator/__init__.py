"""Scheduling core: matcher, graph, state machine, queue, registry, scheduler, lifecycle."""
