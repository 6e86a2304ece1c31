"""
chatmem: long-term memory retrieval for conversational agents
"""

__version__ = "0.1.0"
