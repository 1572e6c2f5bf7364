"""Setup script for vexdoc-mcp-server."""

from setuptools import setup, find_packages

setup(
    name="vexdoc-mcp-server",
    version="0.1.0",
    description="MCP server with tools to create and merge OpenVEX documents",
    packages=find_packages(include=["vexdoc_mcp", "vexdoc_mcp.*"]),
    python_requires=">=3.10",
    install_requires=[
        "jsonschema>=4.0.0",
        "starlette>=0.27.0",
        "uvicorn>=0.23.0",
        "click>=8.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "vexdoc-mcp=vexdoc_mcp.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Security",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
)
