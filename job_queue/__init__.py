"""
Reply job queue — claims, retries and dead-letters reply jobs.

- JobStore owns every reply_jobs mutation (lease, succeed, fail, dead-letter)
- ReplyWorker runs the poll loop: claim → context → generate → write-back
- runner.main is the `reply-worker` process entry point
"""
