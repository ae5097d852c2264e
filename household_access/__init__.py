"""Authorization & impersonation engine for the household-services platform."""
