"""
Ops Workflow Hub - Services Package

Workflow engine, orchestrators and collaborator adapters for claims and
leave requests.
"""
