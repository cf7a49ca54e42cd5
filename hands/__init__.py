"""
HELM — Hands: contracts for the collaborators that act on the world (tools, desktop automation).
"""
