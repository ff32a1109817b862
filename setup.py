from setuptools import find_packages, setup

setup(
    name="comfy-provision",
    version="0.1.0",
    packages=find_packages(
        include=[
            "prov_common",
            "prov_common.*",
            "prov_persistence",
            "prov_persistence.*",
            "prov_downloads",
            "prov_downloads.*",
            "prov_nodes",
            "prov_nodes.*",
            "prov_controller",
            "prov_controller.*",
            "prov_server",
            "prov_server.*",
            "prov_admin",
            "prov_admin.*",
        ]
    ),
    install_requires=[
        "requests>=2.31.0",
        "fastapi>=0.104.0",
        "uvicorn>=0.24.0",
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
        "huggingface-hub>=0.20.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "comfy-prov=prov_controller.__main__:main",
            "comfy-prov-admin=prov_admin.cli:cli",
        ],
    },
    python_requires=">=3.11.4",
)
