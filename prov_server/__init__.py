"""
Provisioning status server module.

A FastAPI application exposing the run ledger (downloads, repositories,
extension builds, workers) as JSON.
"""
