# Copyright DataStax, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from cqlnative import AuthenticationFailed


class AuthProvider(object):
    """
    Gives a :class:`~cqlnative.Session` a new :class:`~.Authenticator` each
    time the node answers STARTUP with AUTHENTICATE.
    """

    def new_authenticator(self, host):
        raise NotImplementedError()


class Authenticator(object):
    """
    One SASL exchange. The session sends :meth:`initial_response`, passes
    every AUTH_CHALLENGE to :meth:`evaluate_challenge` and sends back what it
    returns, and calls :meth:`on_authentication_success` on AUTH_SUCCESS.
    """

    server_authenticator_class = None
    """ Class name the node sent in AUTHENTICATE """

    def initial_response(self):
        """
        Bytes for the first AUTH_RESPONSE; :const:`None` sends a null.
        """
        return None

    def evaluate_challenge(self, challenge):
        raise NotImplementedError()

    def on_authentication_success(self, token):
        """
        `token` is the optional AUTH_SUCCESS payload, bytes or :const:`None`.
        """
        pass


class PlainTextAuthProvider(AuthProvider):
    """
    An :class:`~.AuthProvider` that works with Cassandra's PasswordAuthenticator.

    Example usage::

        from cqlnative import Session
        from cqlnative.auth import PlainTextAuthProvider

        auth_provider = PlainTextAuthProvider(
                username='cassandra', password='cassandra')
        session = Session(auth_provider=auth_provider)
    """

    def __init__(self, username, password):
        self.username = username
        self.password = password

    def new_authenticator(self, host):
        return PlainTextAuthenticator(self.username, self.password)


class PlainTextAuthenticator(Authenticator):
    """
    SASL PLAIN. Nodes running DseAuthenticator expect the mechanism name
    first and send ``PLAIN-START`` as a challenge; other nodes take the
    credentials as the initial response.
    """

    dse_authenticator_class = "com.datastax.bdp.cassandra.auth.DseAuthenticator"

    def __init__(self, username, password):
        self.username = username
        self.password = password

    def get_mechanism(self):
        return b"PLAIN"

    def get_initial_challenge(self):
        return b"PLAIN-START"

    def initial_response(self):
        if self.server_authenticator_class == self.dse_authenticator_class:
            return self.get_mechanism()
        return self.evaluate_challenge(self.get_initial_challenge())

    def evaluate_challenge(self, challenge):
        if challenge == b'PLAIN-START':
            data = "\x00%s\x00%s" % (self.username, self.password)
            return data.encode('utf-8')
        raise AuthenticationFailed('Did not receive a valid challenge response from server')
