"""
classarena
Tournament orchestration for classroom knowledge competitions.
"""

__version__ = "1.0.0"
