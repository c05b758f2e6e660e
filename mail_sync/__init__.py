"""
Email reconciliation engine for the quoting product.

A pull-based pipeline that:
- Polls connected Gmail mailboxes for new messages in known conversations
- Drops noise (spam, drafts, marketing mail)
- Matches each email to the quote it belongs to
- Stores a normalized, deduplicated conversation record per message
"""
