from setuptools import find_packages, setup

setup(
    name="fleet-cli",
    version="0.1.0",
    packages=find_packages(
        include=[
            "fleet_common",
            "fleet_common.*",
            "fleet_build",
            "fleet_build.*",
            "fleet_deploy",
            "fleet_deploy.*",
            "fleet_device",
            "fleet_device.*",
            "fleet_cli",
            "fleet_cli.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "click>=8.1.0",
        "PyYAML>=6.0",
        "watchdog>=3.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fleet=fleet_cli.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
