# Copyright 2013-2017 DataStax, Inc.
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

from setuptools import setup

from cqlnative import __version__

long_description = """
A blocking client for the Cassandra native protocol (v4) that speaks to a
single node: handshake and authentication, queries, prepared statements,
batches and the CQL value codec.
"""

dependencies = []


def run_setup():
    setup(
        name='cqlnative',
        version=__version__,
        description='Single-node native protocol client for Cassandra',
        long_description=long_description,
        packages=['cqlnative'],
        keywords='cassandra,cql,native protocol',
        include_package_data=True,
        install_requires=dependencies,
        extras_require={'test': ['pytest']},
        python_requires='>=3.7',
        classifiers=[
            'Development Status :: 4 - Beta',
            'Intended Audience :: Developers',
            'License :: OSI Approved :: Apache Software License',
            'Natural Language :: English',
            'Operating System :: OS Independent',
            'Programming Language :: Python',
            'Programming Language :: Python :: 3',
            'Programming Language :: Python :: Implementation :: CPython',
            'Topic :: Software Development :: Libraries :: Python Modules'
        ])

run_setup()
