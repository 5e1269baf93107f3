from setuptools import setup, find_packages

setup(
    name="klyro",
    version="0.1.0",
    description="Developer reputation pipeline: GitHub and on-chain analysis, scoring and verifiable credentials",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.0",
        "httpx>=0.25",
        "redis>=5.0.1",
        "python-json-logger>=3.1",
        "slowapi>=0.1.9",
        "uvicorn>=0.27",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
            "fakeredis>=2.21",
        ],
    },
    entry_points={"console_scripts": ["klyro=klyro.cli:main"]},
    python_requires=">=3.10",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3",
    ],
    keywords="developer reputation github web3 credentials scoring",
)
