"""
PodSite - Content manager for a podcast website.

This package provides functionality to:
1. Serve published episodes with synchronized, deep-linkable transcripts
2. Manage email subscribers and their notification preferences
3. Broadcast episode notifications through a transactional email provider
4. Guard public endpoints with a per-client rate limiter
"""

__version__ = "1.0.0"
