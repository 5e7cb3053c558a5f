"""Application services: member operations, jobs, reconciliation and webhooks."""
