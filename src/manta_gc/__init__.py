"""
Durable-write stage of the manta garbage collector.

`manta_gc.instruction_writer` turns per-storage-node deletion decisions into
spool files for the offline mako GC scripts and reports records that are
safe to purge upstream.
"""

__all__: list[str] = []
