"""Source, test and deploy pipeline driven by GitHub webhooks.

This package provides:
- Webhook intake with HMAC verification and trigger matching
- Stage execution for GitHub source, shell validation and CloudFormation deploy
- Versioned artifact storage (S3 or in-memory)
- Least-privilege role binding per stage
- Once-per-scope singleton resource provisioning
- Run state machine with PostgreSQL persistence
"""
