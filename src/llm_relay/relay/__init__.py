"""Task relay between specialized solver backends.

The core loop is deliberately small: route a task by category, let a
backend attempt it, append the attempt to an append-only history, ask the
loop detector whether the task is stuck, and if so hand the task over to the
next backend in the category table with a one-shot summary of what failed.

Backends never share a transcript. The only thing that crosses a relay
boundary is the HandoverRecord, which is consumed by exactly one invocation.
"""
