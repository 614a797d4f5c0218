"""Task backlog: models, stores, selection and the reference worker."""
