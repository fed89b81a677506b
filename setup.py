"""
Setup script for SecureMsg - End-to-end encrypted messaging over a relay.

Created by orpheus497

This messenger provides:
- Signed prekey bundles published to an untrusted relay
- X3DH-style session establishment with one-time prekeys
- AES-GCM messages with HMAC-authenticated, replay-protected packages
- A per-message symmetric key ratchet
- Password-encrypted key and session storage (Argon2id + AES-256-GCM)
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='securemsg',
    version='1.0.0',
    author='orpheus497',
    description='End-to-end encrypted messaging with signed prekeys, a key ratchet and a mailbox relay',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.8',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'rich>=13.7.0',
        'tomli>=2.0.1; python_version < "3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'securemsg=securemsg.__main__:main',
            'securemsg-relay=securemsg.server:main',
        ],
    },
)
