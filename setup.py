from setuptools import setup

with open("README.md") as f:
    readme = f.read()

_ = setup(
    name="certwarden",
    version="1.0.0",
    license="MIT",
    long_description=readme,
    long_description_content_type="text/markdown",
    install_requires=[
        "impacket~=0.12.0",
        "ldap3~=2.9.1",
        "dnspython~=2.7.0",
        "argcomplete~=3.5.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    packages=[
        "certwarden",
        "certwarden.commands",
        "certwarden.commands.parsers",
        "certwarden.lib",
    ],
    package_data={
        "certwarden": ["data/*.json"],
    },
    entry_points={
        "console_scripts": ["certwarden=certwarden.entry:main"],
    },
    description="Active Directory Certificate Services configuration auditing",
)
