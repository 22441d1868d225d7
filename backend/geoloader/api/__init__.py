"""API router subpackage for the registration service.

Submodules:
    - register: Upload endpoint that runs the registration pipeline for
      one dataset and returns the run summary.
"""
