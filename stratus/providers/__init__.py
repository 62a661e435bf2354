"""Cloud provider adapters.

Each subpackage imports its SDKs at module level; use
``stratus.task.factory`` to load only the one a Cloud needs.
"""
