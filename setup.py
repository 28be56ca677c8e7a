from setuptools import setup, find_packages

setup(
    name="shhsignal",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=["cryptography>=42.0.0", "pyyaml>=6.0", "pydantic>=2.0"],
    extras_require={"test": ["pytest>=7.0", "pytest-asyncio>=0.21"]},
    entry_points={"console_scripts": ["shhsignal=shhsignal.cli:main"]},
    description="Serverless peer-to-peer signaling over a topic-addressed message bus",
)
