# ABOUTME: Git access package for the sync engine
# ABOUTME: REST providers, provider registry, webhook parsing and local checkouts

"""
Git access.

    - provider.py: GitProvider protocol, repository URL parsing, ProviderRegistry
    - client.py: GitHub and GitLab REST providers (httpx + tenacity)
    - webhook.py: webhook parsing and signature validation
    - repo.py: GitPython checkouts for Helm charts
"""
