"""
Book My Last Wishes patron portal.

FastAPI service that backs the public pledge form and the patron dashboard.
Persistence, identity, object storage and serverless functions are provided by
an external backend and consumed through the client abstractions in this
package, each with an in-memory implementation for development and tests.
"""
