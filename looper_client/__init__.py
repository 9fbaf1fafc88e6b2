"""Client-side replica of a live looper's synth → chain → take tree.

The update poller feeds server deltas through the reconciler into the
entity tree; the action gateway applies local edits through the invariant
engine and forwards them to the server.
"""
from __future__ import annotations
