"""
oplog-sync: replicate MongoDB collections into a relational database by
tailing the oplog.
"""

__version__ = "0.1.0"
