"""saccodb: multi-tenant stage operations backend for matatu SACCOs."""
