"""
ops-provision: declarative host provisioning.

Describes a host installation as an ordered plan of idempotent steps and
runs it with rollback of completed work when a fatal step fails.

Main features:
- Check-before-act steps, so re-running a finished plan changes nothing
- Fatal and soft step criticality
- Reverse-order rollback on failure, timeout or cancellation
- Cryptographically secure credential and port generation
- Strict templates that refuse to render with missing variables
- Dry-run mode that records commands without running them
"""
