from setuptools import setup, find_packages

setup(
    name='automation-hub',
    version='1.0.0',
    packages=find_packages(include=['automation_hub', 'automation_hub.*']),
    install_requires=[
        'pyyaml',
        'python-dotenv',
        'pydantic>=2',
        'click',
        'requests',
        'fastapi',
        'uvicorn',
    ],
    extras_require={
        'dev': ['pytest', 'httpx'],
    },
    entry_points={
        'console_scripts': [
            'automation-hub=automation_hub.cli:cli',
        ],
    },
)
