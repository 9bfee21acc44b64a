"""BoxOffice: multi-tenant event ticketing platform."""
