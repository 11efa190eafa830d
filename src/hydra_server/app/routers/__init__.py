"""HTTP routers for the Hydra workspace API."""
