"""Network front ends: DNS over UDP/TCP and the admin HTTP API."""
