"""Group directory routes: read-only views of group membership."""
