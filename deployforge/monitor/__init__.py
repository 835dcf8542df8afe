"""Deployforge monitor — Rich rendering of pipeline records.

Modules
-------
renderer
    ``DeployRenderer`` turns HealthReports, PipelineResults, build
    manifests, backups and deployment history into Rich renderables.
"""
