"""
Task subsystem.

Components:
- task_models.py: data structures (Task, Dependency, enums) + schema validation
- task_migration.py: forward migration of legacy records
- task_lock.py: cross-process lock file
- task_store.py: newline-delimited JSON storage (load / save / update_all)
- task_api.py: small high-level helpers used by callers
"""
