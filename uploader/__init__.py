"""GitHub Uploader: publish tar.gz projects as GitHub repositories."""
