"""Unit tests for the challenge state machine."""

import logging
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509

from acme_distributed.challenge import (
    ORDER_INTERVAL,
    VALIDATION_INTERVAL,
    Challenge,
    ChallengeState,
    fulfillment_for,
)
from acme_distributed.connectors import AuthorizationType
from acme_distributed.crypto import certificate_not_after
from acme_distributed.exceptions import ChallengeError
from acme_distributed.retry import Phase, RetryPolicy


@pytest.fixture
def certificate(certificate_factory):
    return certificate_factory(subject="example.com", san=("www.example.com",))


@pytest.fixture
def make_challenge(authority, certificate, no_sleep):
    def factory(authorization_type=AuthorizationType.HTTP_01, retries=3, cert=None):
        return Challenge(
            authority,
            cert or certificate,
            RetryPolicy(retries),
            authorization_type=authorization_type,
            sleep=no_sleep,
        )

    return factory


class TestFulfillment:
    def test_http(self, authority):
        [authorization] = authority.new_order(["example.com"]).authorizations()

        name, content = fulfillment_for(authorization.http, AuthorizationType.HTTP_01)

        assert name == "token0"
        assert content == "token0.thumbprint"

    def test_dns(self, authority):
        [authorization] = authority.new_order(["example.com"]).authorizations()

        name, content = fulfillment_for(authorization.dns, AuthorizationType.DNS_01)

        assert name == "_acme-challenge"
        assert content == authorization.dns.record_content


class TestStart:
    """Tests for Challenge.start()."""

    def test_places_order_for_all_subjects(self, make_challenge, authority):
        challenge = make_challenge()

        challenge.start()

        assert challenge.state == ChallengeState.AUTHORIZED
        assert authority.orders[0].names == ["example.com", "www.example.com"]
        assert [a.subject for a in challenge.authorizations] == [
            "example.com",
            "www.example.com",
        ]

    def test_start_twice_raises_without_network(self, make_challenge, authority):
        challenge = make_challenge()
        challenge.start()

        with pytest.raises(ChallengeError, match="Cannot start a challenge in state"):
            challenge.start()

        assert authority.new_order_calls == 1

    def test_server_error_fails_challenge(self, make_challenge, authority, rate_limited):
        authority.new_order_error = rate_limited
        challenge = make_challenge()

        with pytest.raises(ChallengeError, match="Too many orders") as exc_info:
            challenge.start()

        assert exc_info.value.phase == Phase.NEW_ORDER
        assert challenge.state == ChallengeState.FAILED

    def test_new_order_timeouts_are_retried(self, make_challenge, authority):
        authority.new_order_timeouts = 2

        challenge = make_challenge(retries=2)
        challenge.start()

        assert challenge.state == ChallengeState.AUTHORIZED
        assert authority.new_order_calls == 3

    def test_too_many_timeouts(self, make_challenge, authority):
        authority.new_order_timeouts = 3
        challenge = make_challenge(retries=2)

        with pytest.raises(ChallengeError, match="timeouts during new-order"):
            challenge.start()

        assert challenge.state == ChallengeState.FAILED

    def test_no_authorizations(self, make_challenge, authority):
        authority.no_authorizations = True
        challenge = make_challenge()

        with pytest.raises(ChallengeError, match="no authorizations") as exc_info:
            challenge.start()

        assert exc_info.value.phase == Phase.AUTHORIZATION_FETCH
        assert challenge.state == ChallengeState.FAILED

    def test_failed_challenge_cannot_restart(self, make_challenge, authority, rate_limited):
        authority.new_order_error = rate_limited
        challenge = make_challenge()
        with pytest.raises(ChallengeError):
            challenge.start()

        with pytest.raises(ChallengeError, match="state 'failed'"):
            challenge.start()

        assert authority.new_order_calls == 1


class TestDistribute:
    """Tests for Challenge.distribute()."""

    def test_requires_start(self, make_challenge, connector_factory):
        challenge = make_challenge()

        with pytest.raises(ChallengeError, match="Cannot distribute"):
            challenge.distribute([connector_factory("web1")])

    def test_every_connector_gets_every_challenge(self, make_challenge, connector_factory):
        web1, web2 = connector_factory("web1"), connector_factory("web2")
        challenge = make_challenge()
        challenge.start()

        created = challenge.distribute([web1, web2])

        assert created == [web1, web2]
        assert challenge.state == ChallengeState.VALIDATING
        assert web1.challenges == ["/var/www/acme/token0", "/var/www/acme/token1"]
        assert web2.challenges == ["/var/www/acme/token0", "/var/www/acme/token1"]

    def test_dns_connectors_get_txt_records(self, make_challenge, connector_factory):
        ns1 = connector_factory("ns1", dns=True)
        challenge = make_challenge(AuthorizationType.DNS_01)
        challenge.start()

        challenge.distribute([ns1])

        assert ns1.challenges == [
            "_acme-challenge.example.com",
            "_acme-challenge.www.example.com",
        ]

    def test_failing_connector_is_not_cleaned(
        self, make_challenge, connector_factory, transport, log_capture
    ):
        """Only connectors that created artifacts are kept for cleanup."""
        web1, web2 = connector_factory("web1"), connector_factory("web2")
        transport.sessions[1].responder = lambda command: "Permission denied"
        challenge = make_challenge()
        challenge.start()

        created = challenge.distribute([web1, web2])

        assert created == [web1]
        errors = log_capture.get_records(logging.ERROR, name="acme_distributed.challenge")
        assert len(errors) == 2
        assert {r.connector for r in errors} == {"web2"}

        assert challenge.cleanup() == 0
        assert not any(c.startswith("test -f") for c in transport.commands("web2.example.com"))
        removals = [c for c in transport.commands("web1.example.com") if c.startswith("test -f")]
        assert len(removals) == 2

    def test_partially_failing_connector_is_cleaned(
        self, make_challenge, connector_factory, transport
    ):
        web1 = connector_factory("web1")
        transport.sessions[0].responder = (
            lambda command: "disk full" if "token1" in command else "success"
        )
        challenge = make_challenge()
        challenge.start()

        assert challenge.distribute([web1]) == [web1]
        assert web1.challenges == ["/var/www/acme/token0"]

    def test_no_connectors(self, make_challenge):
        challenge = make_challenge()
        challenge.start()

        assert challenge.distribute([]) == []
        assert challenge.state == ChallengeState.VALIDATING

    def test_missing_challenge_type_is_skipped(
        self, make_challenge, authority, connector_factory, log_capture
    ):
        web1 = connector_factory("web1")
        challenge = make_challenge()
        challenge.start()
        del challenge.authorizations[0]._challenges["http-01"]

        challenge.distribute([web1])

        assert web1.challenges == ["/var/www/acme/token1"]
        assert "Server offers no challenge of this type" in log_capture.get_messages(
            logging.ERROR
        )


class TestValidate:
    """Tests for Challenge.validate()."""

    @pytest.fixture
    def distributed(self, make_challenge, connector_factory):
        def factory(**kwargs):
            challenge = make_challenge(**kwargs)
            challenge.start()
            challenge.distribute([connector_factory("web1")])
            return challenge

        return factory

    def test_requires_distribute(self, make_challenge):
        challenge = make_challenge()
        challenge.start()

        with pytest.raises(ChallengeError, match="Cannot validate"):
            challenge.validate()

    def test_all_valid(self, distributed, no_sleep):
        challenge = distributed()

        challenge.validate()

        assert challenge.state == ChallengeState.VALID
        assert challenge.is_valid()
        assert all(a.http.validation_requests == 1 for a in challenge.authorizations)
        assert no_sleep.delays == [VALIDATION_INTERVAL, VALIDATION_INTERVAL]

    def test_polls_while_pending(self, distributed, authority, no_sleep):
        authority.scripts["example.com"] = ["pending", "processing", "valid"]

        challenge = distributed()
        challenge.validate()

        assert challenge.state == ChallengeState.VALID
        assert challenge.authorizations[0].http.reloads == 3

    def test_invalid_authorization(self, distributed, authority, log_capture):
        """An invalid authorization does not stop the others from being validated."""
        authority.scripts["example.com"] = ["invalid"]

        challenge = distributed()
        challenge.validate()

        assert challenge.state == ChallengeState.VALIDATING
        assert not challenge.is_valid()
        assert challenge.authorizations[1].http.validation_requests == 1
        [failure] = log_capture.get_records(logging.ERROR)
        assert failure.getMessage() == "Authorization failed"
        assert failure.subject == "example.com"
        assert failure.error == "Connection refused"

    def test_already_valid_authorization_is_skipped(self, distributed):
        challenge = distributed()
        challenge.authorizations[0].status = "valid"

        challenge.validate()

        assert challenge.authorizations[0].http.validation_requests == 0
        assert challenge.state == ChallengeState.VALID

    def test_poll_timeouts_within_budget(self, distributed, authority):
        authority.challenge_timeouts["example.com"] = 2

        challenge = distributed(retries=2)
        challenge.validate()

        assert challenge.state == ChallengeState.VALID

    def test_poll_timeouts_exhaust_budget(self, distributed, authority):
        authority.challenge_timeouts["example.com"] = 3
        challenge = distributed(retries=2)

        with pytest.raises(ChallengeError) as exc_info:
            challenge.validate()

        assert exc_info.value.phase == Phase.VALIDATION_POLL
        assert challenge.state == ChallengeState.FAILED
        assert challenge.authorizations[1].http.validation_requests == 0


class TestCleanup:
    def test_cleanup_runs_once(self, make_challenge, connector_factory, transport):
        web1 = connector_factory("web1")
        challenge = make_challenge()
        challenge.start()
        challenge.distribute([web1])

        assert challenge.cleanup() == 0
        assert challenge.cleanup() == 0

        removals = [c for c in transport.commands("web1.example.com") if c.startswith("test -f")]
        assert len(removals) == 2

    def test_cleanup_error_counts_are_summed(self, make_challenge, connector_factory, transport):
        web1, web2 = connector_factory("web1"), connector_factory("web2")
        challenge = make_challenge()
        challenge.start()
        challenge.distribute([web1, web2])
        for session in transport.sessions:
            session.responder = lambda command: ""

        assert challenge.cleanup() == 4


class TestFinalize:
    """Tests for Challenge.finalize()."""

    @pytest.fixture
    def validated(self, make_challenge, connector_factory):
        def factory(**kwargs):
            challenge = make_challenge(**kwargs)
            challenge.start()
            challenge.distribute([connector_factory("web1")])
            challenge.validate()
            challenge.cleanup()
            return challenge

        return factory

    def test_writes_certificate(self, validated, certificate, authority, no_sleep):
        challenge = validated()

        challenge.finalize()

        assert certificate.pem_exists()
        not_after = certificate_not_after(certificate.path.read_bytes())
        assert not_after > datetime.now(timezone.utc)
        assert no_sleep.delays[-1] == ORDER_INTERVAL

    def test_csr_covers_all_subjects(self, validated, authority):
        validated().finalize()

        csr = authority.orders[0].csr
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert san.get_values_for_type(x509.DNSName) == ["example.com", "www.example.com"]

    def test_refuses_unvalidated(self, make_challenge, certificate):
        challenge = make_challenge()
        challenge.start()

        with pytest.raises(ChallengeError, match="not all authorizations are valid"):
            challenge.finalize()

        assert not certificate.pem_exists()

    def test_invalid_order(self, validated, authority, certificate):
        authority.final_order_status = "invalid"
        challenge = validated()

        with pytest.raises(ChallengeError, match="Order is 'invalid'") as exc_info:
            challenge.finalize()

        assert exc_info.value.phase == Phase.ORDER_POLL
        assert str(exc_info.value).endswith(": Error finalizing order")
        assert challenge.state == ChallengeState.FAILED
        assert not certificate.pem_exists()

    def test_certificate_timeouts_are_retried(self, validated, authority, certificate):
        authority.certificate_timeouts = 2

        validated(retries=2).finalize()

        assert certificate.pem_exists()
        assert authority.orders[0].certificate_requests == 3

    def test_certificate_retrieval_gives_up(self, validated, authority, certificate):
        authority.certificate_timeouts = 3
        challenge = validated(retries=2)

        with pytest.raises(ChallengeError) as exc_info:
            challenge.finalize()

        assert exc_info.value.phase == Phase.CERTIFICATE_RETRIEVAL
        assert not certificate.pem_exists()

    def test_existing_pem_is_replaced(self, validated, certificate, pem_factory):
        certificate.path.write_bytes(pem_factory(["example.com"], valid_for=timedelta(days=3)))
        old = certificate.path.read_bytes()

        validated().finalize()

        assert certificate.path.read_bytes() != old
        assert certificate.remaining_lifetime() >= 89
