"""ACME certificate issuance with a KMS-held account key.

This package drives the client side of the `ACME protocol`_ (directory,
account, order, http-01 authorization, finalization and download) while
delegating every JWS signature to a Key Management Service.

.. _`ACME protocol`: https://datatracker.ietf.org/doc/html/rfc8555

"""
