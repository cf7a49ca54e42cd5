"""
HELM — Brain: tool-call parsing, loop detection and the tool-calling loop engine.
"""
