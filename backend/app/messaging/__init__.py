"""Messaging persistence module.

Services:
    - Database: DuckDB database with a bounded cursor pool.
    - MembershipOracle: user and group-membership lookups.
    - MessageStore: send/update/delete and history queries for messages.
    - GroupDirectory: group creation (membership is read-only elsewhere).
"""
